"""
Build Request Model
===================
Canonical, vendor-neutral description of "build this commit of this ref".

Produced by the Event Normalizer from a verified webhook payload and never
mutated afterwards (frozen model).

Fields:
    source_ref            — branch or tag ref (e.g. "refs/heads/main")
    commit_sha            — exact code snapshot to build
    repository_identifier — "owner/repo"
    trigger_event_type    — push | pull_request | rollback
    received_at           — when the webhook arrived (UTC)
    raw_payload_digest    — sha256 hex of the raw webhook body
    repository_url        — clone URL, when the payload carries one
    pull_request_number   — set for pull_request triggers
    sender                — login of the user who triggered the event

Coalescing key:
    (repository_identifier, source_ref) for pushes. Pull requests key on
    refs/pull/<number>/head so a PR build never supersedes a push to the
    same branch, nor a fork PR a same-named branch of the base repo.
"""
from datetime import datetime
from typing import Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

TriggerEventType = Literal["push", "pull_request", "rollback"]


class BuildRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_ref: str
    commit_sha: str
    repository_identifier: str
    trigger_event_type: TriggerEventType
    received_at: datetime
    raw_payload_digest: str = ""
    repository_url: str = ""
    pull_request_number: Optional[int] = None
    sender: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        """Coalescing key shared by all pushes to the same ref."""
        if self.trigger_event_type == "pull_request":
            if self.pull_request_number is not None:
                return (self.repository_identifier, f"refs/pull/{self.pull_request_number}/head")
            return (self.repository_identifier, f"refs/pull/{self.source_ref}")
        return (self.repository_identifier, self.source_ref)

    @property
    def short_sha(self) -> str:
        return self.commit_sha[:7]

    @property
    def branch(self) -> str:
        """Ref without the refs/heads/ or refs/tags/ prefix."""
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.source_ref.startswith(prefix):
                return self.source_ref[len(prefix):]
        return self.source_ref
