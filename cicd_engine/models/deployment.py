"""
Deployment Models
=================
Pydantic models exchanged between the package stage, the deploy stage and
the Deployment Strategy Selector.

    DeploymentTarget    — read-only environment configuration
    ArtifactReference   — immutable pointer to a built, deployable output
    DeployResult        — outcome of deploy / rollback
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

StrategyKind = Literal["ssh", "s3_pull", "codedeploy", "container", "config_mgmt"]
DeployStatus = Literal["DEPLOYED", "FAILED", "ROLLED_BACK", "ROLLBACK_FAILED"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment_name: str
    strategy_kind: StrategyKind
    connection_parameters: Dict[str, Any] = Field(default_factory=dict)
    health_check_url: Optional[str] = None
    health_check_attempts: int = Field(default=10, ge=1)
    health_check_interval_seconds: float = Field(default=5.0, ge=0)
    # Empty list = every ref deploys here
    branches: List[str] = Field(default_factory=list)

    def accepts_ref(self, branch: str) -> bool:
        return not self.branches or branch in self.branches


class ArtifactReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    pipeline_run_id: int
    storage_location: str
    checksum: str
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def file_name(self) -> str:
        return self.storage_location.rstrip("/").rsplit("/", 1)[-1]


class DeployResult(BaseModel):
    status: DeployStatus
    environment_name: str = ""
    deployed_at: datetime = Field(default_factory=_utcnow)
    artifact_ref: Optional[ArtifactReference] = None
    previous_artifact_ref: Optional[ArtifactReference] = None
    # Set when a failed deploy triggered the automatic rollback
    rollback_status: Optional[DeployStatus] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in ("DEPLOYED", "ROLLED_BACK")
