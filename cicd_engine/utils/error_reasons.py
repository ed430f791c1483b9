"""
Error Reasons
=============
Standardised, machine-readable reason codes for every failure path.

Rejected before queuing (never create a Pipeline Run):
    SIGNATURE_MISMATCH, MISSING_HEADER, MALFORMED_PAYLOAD, UNSUPPORTED_EVENT

Queue overload:
    BACKPRESSURE_DROPPED   — oldest waiting entry rejected, must be resubmitted

Stage failures (STAGE_FAILURE sub-reasons):
    COMMAND_ERROR, TIMEOUT, QUALITY_GATE_FAILED

Deployment:
    DEPLOY_FAILURE         — health check exhausted, one rollback attempted

Delivery:
    UNDELIVERED            — status/notification publish exhausted retries
"""


# ---------------------------------------------------------------------------
# Inbound validation
# ---------------------------------------------------------------------------
SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
MISSING_HEADER = "MISSING_HEADER"
MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
UNSUPPORTED_EVENT = "UNSUPPORTED_EVENT"

# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------
BACKPRESSURE_DROPPED = "BACKPRESSURE_DROPPED"
NO_CAPACITY = "NO_CAPACITY"

# ---------------------------------------------------------------------------
# Stage execution
# ---------------------------------------------------------------------------
STAGE_FAILURE = "STAGE_FAILURE"
COMMAND_ERROR = "COMMAND_ERROR"
TIMEOUT = "TIMEOUT"
QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"
ABORTED = "ABORTED"

# ---------------------------------------------------------------------------
# Deployment / delivery
# ---------------------------------------------------------------------------
DEPLOY_FAILURE = "DEPLOY_FAILURE"
UNDELIVERED = "UNDELIVERED"


# ---------------------------------------------------------------------------
# HTTP mapping for validation failures
# ---------------------------------------------------------------------------
HTTP_STATUS_FOR_REASON = {
    SIGNATURE_MISMATCH: 401,
    MISSING_HEADER: 401,
    MALFORMED_PAYLOAD: 400,
    UNSUPPORTED_EVENT: 400,
}


def http_status_for(reason: str) -> int:
    """
    Map a validation reason to the HTTP status returned to the webhook caller.

    Unknown reasons map to 400.
    """
    return HTTP_STATUS_FOR_REASON.get(reason, 400)
