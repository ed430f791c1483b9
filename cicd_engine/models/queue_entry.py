"""
Queue Entry Model
=================
Wraps a BuildRequest with its coalescing state.

States:
    PENDING     — waiting for the debounce window or a scheduler slot
    SUPERSEDED  — a newer push for the same ref arrived; never scheduled
    SCHEDULED   — promoted out of the debounce window, handed to the scheduler
    DROPPED     — rejected by the scheduler with BACKPRESSURE_DROPPED

Rollback entries carry the ArtifactReference to redeploy.
"""
import itertools
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

from cicd_engine.models.build_request import BuildRequest
from cicd_engine.models.deployment import ArtifactReference

QueueState = Literal["PENDING", "SUPERSEDED", "SCHEDULED", "DROPPED"]

_entry_ids = itertools.count(1)


def _next_entry_id() -> int:
    return next(_entry_ids)


class QueueEntry(BaseModel):
    entry_id: int = Field(default_factory=_next_entry_id)
    build_request: BuildRequest
    state: QueueState = "PENDING"
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    superseded_by: Optional[int] = None
    rollback_artifact: Optional[ArtifactReference] = None
    rollback_environment: Optional[str] = None

    @property
    def key(self):
        return self.build_request.key

    @property
    def is_rollback(self) -> bool:
        return self.rollback_artifact is not None
