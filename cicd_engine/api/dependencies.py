"""
Shared FastAPI dependencies.
"""
from fastapi import HTTPException, Request

from cicd_engine.agents.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="engine not started")
    return orchestrator
