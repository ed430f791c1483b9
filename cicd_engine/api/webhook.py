"""
POST /webhook/github
Inbound GitHub webhook. The raw body is verified against X-Hub-Signature-256
before anything is parsed.

Responses:
    200 {"result": "accepted", "entry_id": N}   queued for the debounce window
    200 {"result": "skipped", "detail": ...}     filtered (ping, untracked event, deleted ref)
    401 SIGNATURE_MISMATCH | MISSING_HEADER
    400 MALFORMED_PAYLOAD | UNSUPPORTED_EVENT
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from cicd_engine.agents.orchestrator import Orchestrator
from cicd_engine.api.dependencies import get_orchestrator

router = APIRouter(tags=["Webhook"])


@router.post("/webhook/github")
async def github_webhook(request: Request, orchestrator: Orchestrator = Depends(get_orchestrator)):
    raw_body = await request.body()
    outcome = await orchestrator.handle_webhook(raw_body, request.headers)
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_dict())
