"""
Pipeline Run Model
==================
One execution of the stage list for a scheduled BuildRequest.

Owned by the Build Scheduler until an agent is assigned, then exclusively by
one PipelineStateMachine until the terminal notification is delivered and
the run is archived.

stage_history holds one StageRecord per attempt, in execution order.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from cicd_engine.models.build_request import BuildRequest
from cicd_engine.models.deployment import ArtifactReference, DeployResult

RunStatus = Literal["RUNNING", "SUCCEEDED", "FAILED", "ABORTED"]
StageOutcome = Literal["SUCCESS", "FAILURE", "ABORTED"]

TERMINAL_STATUSES = frozenset({"SUCCEEDED", "FAILED", "ABORTED"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageRecord(BaseModel):
    stage_name: str
    outcome: StageOutcome
    reason: str = ""
    attempt: int = 1
    started_at: datetime
    ended_at: datetime
    detail: str = ""

    @property
    def duration_seconds(self) -> float:
        return round((self.ended_at - self.started_at).total_seconds(), 3)


class PipelineRun(BaseModel):
    run_id: int
    build_request: BuildRequest
    assigned_agent_id: str
    current_stage: Optional[str] = None
    stage_history: List[StageRecord] = []
    overall_status: RunStatus = "RUNNING"
    failure_reason: str = ""
    warnings: List[str] = []
    artifact: Optional[ArtifactReference] = None
    deploy_results: List[DeployResult] = []
    rollback_of_run_id: Optional[int] = None
    rollback_environment: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in TERMINAL_STATUSES

    def history_summary(self) -> List[dict]:
        """Compact stage_history for notifications and the status API."""
        return [
            {
                "stage": r.stage_name,
                "outcome": r.outcome,
                "reason": r.reason,
                "attempt": r.attempt,
                "duration_seconds": r.duration_seconds,
            }
            for r in self.stage_history
        ]
