"""
Run inspection and external controls.

Routes:
    GET  /runs                  active + recently finished runs
    GET  /runs/{run_id}         one run with its full stage history
    POST /runs/{run_id}/abort   ABORT signal for an active run
    POST /rollback              new DEPLOY → NOTIFY run for a prior artifact
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from cicd_engine.agents.orchestrator import Orchestrator, RollbackError
from cicd_engine.api.dependencies import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Runs"])


class AbortRequest(BaseModel):
    reason: str = "aborted via API"


class RollbackRequest(BaseModel):
    environment_name: str
    artifact_run_id: Optional[int] = None


def _summary(run) -> dict:
    return {
        "run_id": run.run_id,
        "repository": run.build_request.repository_identifier,
        "ref": run.build_request.source_ref,
        "commit_sha": run.build_request.commit_sha,
        "trigger": run.build_request.trigger_event_type,
        "overall_status": run.overall_status,
        "current_stage": run.current_stage,
        "agent": run.assigned_agent_id,
        "failure_reason": run.failure_reason,
    }


@router.get("/runs")
async def list_runs(limit: int = 50, orchestrator: Orchestrator = Depends(get_orchestrator)):
    runs = orchestrator.list_runs(limit)
    return {
        "active": [_summary(r) for r in runs["active"]],
        "finished": [_summary(r) for r in runs["finished"]],
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)):
    run = orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return run.model_dump(mode="json")


@router.post("/runs/{run_id}/abort")
async def abort_run(run_id: int, body: Optional[AbortRequest] = None,
                    orchestrator: Orchestrator = Depends(get_orchestrator)):
    reason = body.reason if body else "aborted via API"
    if not orchestrator.abort(run_id, reason):
        raise HTTPException(status_code=404, detail=f"run {run_id} is not active")
    logger.info("Abort accepted for run %d", run_id)
    return {"run_id": run_id, "result": "abort requested"}


@router.post("/rollback")
async def rollback(body: RollbackRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        entry = await orchestrator.request_rollback(body.environment_name, body.artifact_run_id)
    except RollbackError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "result": "rollback queued",
        "entry_id": entry.entry_id,
        "environment_name": body.environment_name,
        "artifact_run_id": entry.rollback_artifact.pipeline_run_id,
    }
