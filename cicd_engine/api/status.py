"""
GET /status
Scheduler metrics (queue depth, active runs, agent pool) plus the entries
still inside their debounce window.
"""
from fastapi import APIRouter, Depends

from cicd_engine.agents.orchestrator import Orchestrator
from cicd_engine.api.dependencies import get_orchestrator

router = APIRouter(tags=["Engine"])


@router.get("/status")
async def get_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.status()
