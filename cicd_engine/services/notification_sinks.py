"""
Notification Sinks
==================
Outbound channels the Status Reporter publishes run transitions to.

    CommitStatusSink        — GitHub commit-status API (pending|success|failure)
    WebhookNotificationSink — JSON POST to a notification channel
    LogSink                 — structured log line, never fails

``send`` raises on delivery failure so the reporter can retry it.
``accepts`` decides which transitions a sink cares about.
"""
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from cicd_engine.core.constants import COMMIT_STATE_FOR_STATUS
from cicd_engine.core.config import ConfigError, EngineConfig, NotificationSinkConfig
from cicd_engine.pipeline.state_machine import RunTransition

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class DeliveryError(Exception):
    """A sink could not deliver a transition; retryable."""


def notification_payload(transition: RunTransition) -> Dict[str, Any]:
    run = transition.run
    request = run.build_request
    return {
        "pipeline_run_id": run.run_id,
        "repository": request.repository_identifier,
        "ref": request.source_ref,
        "commit_sha": request.commit_sha,
        "overall_status": run.overall_status,
        "event": transition.kind,
        "stage": transition.stage_name,
        "failure_reason": run.failure_reason,
        "warnings": list(run.warnings),
        "stage_history": run.history_summary(),
    }


class NotificationSink:
    name = "sink"

    def __init__(self, include_intermediate: bool = False) -> None:
        self.include_intermediate = include_intermediate

    def accepts(self, transition: RunTransition) -> bool:
        return transition.is_terminal or self.include_intermediate

    async def send(self, transition: RunTransition) -> None:
        raise NotImplementedError


class LogSink(NotificationSink):
    name = "log"

    def accepts(self, transition: RunTransition) -> bool:
        return True

    async def send(self, transition: RunTransition) -> None:
        run = transition.run
        if transition.is_terminal:
            logger.info("[REPORTER] run %d %s | %s@%s %s", run.run_id, run.overall_status,
                        run.build_request.repository_identifier, run.build_request.source_ref,
                        run.failure_reason or "")
        else:
            logger.info("[REPORTER] run %d %s %s %s", run.run_id, transition.kind,
                        transition.stage_name or "", transition.outcome or "")


class CommitStatusSink(NotificationSink):
    """
    Sets a named commit status on the built sha.

    Intermediate transitions map to ``pending``; only ``run_started`` and
    ``stage_started`` are posted so the status description tracks the
    current stage.
    """
    name = "commit_status"

    def __init__(
        self,
        token: str,
        context: str = "ci/pipeline",
        public_base_url: str = "",
        api_url: str = GITHUB_API,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(include_intermediate=True)
        self.context = context
        self.public_base_url = public_base_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "cicd-engine",
        }
        if token:
            self.headers["Authorization"] = f"token {token}"
        self._client = client

    def accepts(self, transition: RunTransition) -> bool:
        if transition.run.build_request.trigger_event_type == "rollback":
            return False
        return transition.kind in ("run_started", "stage_started", "terminal")

    @staticmethod
    def _repo_path(repository_identifier: str) -> str:
        match = re.search(r"github\.com[:/](.+?)(?:\.git)?$", repository_identifier)
        if match:
            return match.group(1).rstrip("/")
        return repository_identifier

    def build_body(self, transition: RunTransition) -> Dict[str, str]:
        run = transition.run
        if transition.is_terminal:
            state = COMMIT_STATE_FOR_STATUS[run.overall_status]
            description = f"Run #{run.run_id} {run.overall_status.lower()}"
            if run.failure_reason:
                description += f": {run.failure_reason}"
        else:
            state = "pending"
            stage = transition.stage_name or "queued"
            description = f"Run #{run.run_id} running {stage}"
        body = {
            "state": state,
            "context": self.context,
            # GitHub rejects descriptions over 140 characters
            "description": description[:140],
        }
        if self.public_base_url:
            body["target_url"] = f"{self.public_base_url}/runs/{run.run_id}"
        return body

    async def send(self, transition: RunTransition) -> None:
        request = transition.run.build_request
        url = f"{self.api_url}/repos/{self._repo_path(request.repository_identifier)}/statuses/{request.commit_sha}"
        body = self.build_body(transition)
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=self.headers)
            else:
                async with httpx.AsyncClient(headers=self.headers, timeout=20.0) as client:
                    response = await client.post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"commit status {body['state']} for {request.short_sha}: {e}") from e


class WebhookNotificationSink(NotificationSink):
    name = "webhook"

    def __init__(self, url: str, include_intermediate: bool = False,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(include_intermediate)
        self.url = url
        self._client = client

    async def send(self, transition: RunTransition) -> None:
        payload = notification_payload(transition)
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=20.0) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"notification to {self.url}: {e}") from e


def build_sinks(config: EngineConfig) -> List[NotificationSink]:
    sinks: List[NotificationSink] = []
    for sink_config in config.notification_sinks:
        sinks.append(_build_sink(sink_config, config))
    return sinks


def _build_sink(sink_config: NotificationSinkConfig, config: EngineConfig) -> NotificationSink:
    if sink_config.kind == "commit_status":
        return CommitStatusSink(
            token=sink_config.token or config.github_token,
            context=sink_config.context or config.status_context,
            public_base_url=config.public_base_url,
            api_url=sink_config.url or GITHUB_API,
        )
    if sink_config.kind == "webhook":
        if not sink_config.url:
            raise ConfigError("webhook notification sink requires a url")
        return WebhookNotificationSink(sink_config.url, sink_config.include_intermediate)
    return LogSink()
