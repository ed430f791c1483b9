"""
Event Normalizer
================
Maps vendor-specific webhook payloads (GitHub push / pull_request) into a
canonical BuildRequest.

Outcomes:
    NORMALIZED — a BuildRequest was produced
    SKIPPED    — a valid event that should not trigger a build:
                 event type outside the configured trigger set, ping,
                 branch deletion, non-building pull_request action
    FAILED     — UNSUPPORTED_EVENT (event type the engine cannot map) or
                 MALFORMED_PAYLOAD (ref / sha / repository missing or not
                 strings, any field BuildRequest rejects)

Deterministic: same payload + event type → same outcome. The caller has
already verified the signature.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Optional

from pydantic import ValidationError

from cicd_engine.core.constants import PR_BUILD_ACTIONS, ZERO_SHA
from cicd_engine.models.build_request import BuildRequest
from cicd_engine.utils.error_reasons import MALFORMED_PAYLOAD, UNSUPPORTED_EVENT

logger = logging.getLogger(__name__)

NormalizeOutcome = Literal["NORMALIZED", "SKIPPED", "FAILED"]

SUPPORTED_EVENTS = frozenset({"push", "pull_request"})
IGNORED_EVENTS = frozenset({"ping"})


@dataclass(frozen=True)
class NormalizeResult:
    outcome: NormalizeOutcome
    build_request: Optional[BuildRequest] = None
    reason: Optional[str] = None
    detail: str = ""


def _skip(detail: str) -> NormalizeResult:
    logger.info("Webhook skipped: %s", detail)
    return NormalizeResult("SKIPPED", detail=detail)


def _fail(reason: str, detail: str) -> NormalizeResult:
    logger.warning("Webhook failed normalization: %s (%s)", reason, detail)
    return NormalizeResult("FAILED", reason=reason, detail=detail)


def _get(payload: Dict[str, Any], *path: str) -> Any:
    """Nested dict lookup that tolerates missing / non-dict levels."""
    node: Any = payload
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _str(value: Any) -> Optional[str]:
    """Non-empty string field, or None for anything else."""
    return value if isinstance(value, str) and value else None


def payload_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def parse_payload(raw_body: bytes) -> Optional[Dict[str, Any]]:
    """Decode the JSON body. Returns None when it is not a JSON object."""
    try:
        data = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _normalize_push(payload: Dict[str, Any], received_at: datetime, digest: str) -> NormalizeResult:
    ref = _str(payload.get("ref"))
    sha = _str(payload.get("after")) or _str(_get(payload, "head_commit", "id"))
    repo = _str(_get(payload, "repository", "full_name"))

    if payload.get("deleted") is True or sha == ZERO_SHA:
        return _skip(f"ref deletion for {ref}")

    if not ref or not sha or not repo:
        return _fail(MALFORMED_PAYLOAD, "push requires ref, after and repository.full_name")

    return NormalizeResult(
        "NORMALIZED",
        build_request=BuildRequest(
            source_ref=ref,
            commit_sha=sha,
            repository_identifier=repo,
            trigger_event_type="push",
            received_at=received_at,
            raw_payload_digest=digest,
            repository_url=_str(_get(payload, "repository", "clone_url")) or "",
            sender=_str(_get(payload, "sender", "login")) or "",
        ),
    )


def _normalize_pull_request(payload: Dict[str, Any], received_at: datetime, digest: str) -> NormalizeResult:
    action = payload.get("action")
    if action is not None and not isinstance(action, str):
        return _fail(MALFORMED_PAYLOAD, "pull_request action must be a string")
    if action and action not in PR_BUILD_ACTIONS:
        return _skip(f"pull_request action '{action}' does not build")

    head_ref = _str(_get(payload, "pull_request", "head", "ref"))
    sha = _str(_get(payload, "pull_request", "head", "sha"))
    repo = (
        _str(_get(payload, "repository", "full_name"))
        or _str(_get(payload, "pull_request", "base", "repo", "full_name"))
    )

    if not head_ref or not sha or not repo:
        return _fail(MALFORMED_PAYLOAD, "pull_request requires head.ref, head.sha and repository")

    ref = head_ref if head_ref.startswith("refs/") else f"refs/heads/{head_ref}"
    number = payload.get("number") or _get(payload, "pull_request", "number")

    return NormalizeResult(
        "NORMALIZED",
        build_request=BuildRequest(
            source_ref=ref,
            commit_sha=sha,
            repository_identifier=repo,
            trigger_event_type="pull_request",
            received_at=received_at,
            raw_payload_digest=digest,
            repository_url=(
                _str(_get(payload, "pull_request", "head", "repo", "clone_url"))
                or _str(_get(payload, "repository", "clone_url"))
                or ""
            ),
            pull_request_number=number if isinstance(number, int) and not isinstance(number, bool) else None,
            sender=_str(_get(payload, "sender", "login")) or "",
        ),
    )


_NORMALIZERS = {
    "push": _normalize_push,
    "pull_request": _normalize_pull_request,
}


def normalize_event(
    payload: Optional[Dict[str, Any]],
    event_type: Optional[str],
    trigger_events: Iterable[str] = ("push",),
    received_at: Optional[datetime] = None,
    raw_body: bytes = b"",
) -> NormalizeResult:
    """
    Normalize a verified webhook into a BuildRequest.

    Parameters
    ----------
    payload : dict | None
        Decoded JSON body. None means the body was not a JSON object.
    event_type : str | None
        Value of X-GitHub-Event.
    trigger_events : iterable of str
        Event types the webhook is configured to build on.
    received_at : datetime | None
        Arrival time; defaults to now (UTC).
    raw_body : bytes
        Raw request body, used for raw_payload_digest.
    """
    received_at = received_at or datetime.now(timezone.utc)
    event = (event_type or "").strip()

    if event in IGNORED_EVENTS:
        return _skip(f"{event} event")

    if event not in SUPPORTED_EVENTS:
        return _fail(UNSUPPORTED_EVENT, f"event type '{event or '<missing>'}' is not supported")

    if event not in set(trigger_events):
        # Configured for e.g. push-only: a filter, not an error
        return _skip(f"event '{event}' not in trigger set")

    if payload is None:
        return _fail(MALFORMED_PAYLOAD, "body is not a JSON object")

    try:
        result = _NORMALIZERS[event](payload, received_at, payload_digest(raw_body))
    except ValidationError as e:
        return _fail(MALFORMED_PAYLOAD, f"{event} payload has invalid fields: {e.error_count()} error(s)")
    if result.build_request is not None:
        req = result.build_request
        logger.info(
            "Normalized %s event | repo=%s | ref=%s | sha=%s",
            event, req.repository_identifier, req.source_ref, req.short_sha,
        )
    return result
