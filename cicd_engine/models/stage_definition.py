"""
Stage Definition Model
======================
Static, read-only description of one pipeline stage, shared by every run.

Kinds map a stage onto its executor:
    checkout — fetch the commit into the run workspace
    command  — run ``command`` on the assigned Build Agent
    quality  — like command, but a non-zero exit is QUALITY_GATE_FAILED
    package  — run ``command`` (optional) and upload ``artifact_path``
    deploy   — hand the artifact to the Deployment Strategy Selector
    notify   — publish the terminal status; always runs, always last
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

StageKind = Literal["checkout", "command", "quality", "package", "deploy", "notify"]
FailurePolicy = Literal["ABORT_PIPELINE", "CONTINUE_WITH_WARNING"]


class StageDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ordinal: int
    kind: StageKind = "command"
    command: Optional[str] = None
    artifact_path: Optional[str] = None
    retryable: bool = False
    timeout_seconds: float = Field(default=600.0, gt=0)
    failure_policy: FailurePolicy = "ABORT_PIPELINE"


def default_stage_definitions() -> List[StageDefinition]:
    """CHECKOUT → BUILD → TEST → QUALITY → PACKAGE → DEPLOY → NOTIFY."""
    return [
        StageDefinition(name="checkout", ordinal=1, kind="checkout",
                        retryable=True, timeout_seconds=300),
        StageDefinition(name="build", ordinal=2, command="make build",
                        timeout_seconds=900),
        StageDefinition(name="test", ordinal=3, command="make test",
                        timeout_seconds=900),
        StageDefinition(name="quality", ordinal=4, kind="quality", command="make lint",
                        timeout_seconds=600, failure_policy="CONTINUE_WITH_WARNING"),
        StageDefinition(name="package", ordinal=5, kind="package", command="make package",
                        artifact_path="dist/artifact.tar.gz", timeout_seconds=600),
        StageDefinition(name="deploy", ordinal=6, kind="deploy",
                        timeout_seconds=1800),
        StageDefinition(name="notify", ordinal=7, kind="notify",
                        timeout_seconds=120),
    ]
