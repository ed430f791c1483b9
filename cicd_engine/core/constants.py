"""
Constants
=========
GitHub header names, webhook constants and status mappings.
"""
SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
SIGNATURE_PREFIX = "sha256="

ZERO_SHA = "0" * 40

# Pull-request actions that produce a build
PR_BUILD_ACTIONS = frozenset({"opened", "synchronize", "reopened"})

# Run status → commit-status API state
COMMIT_STATE_FOR_STATUS = {
    "RUNNING": "pending",
    "SUCCEEDED": "success",
    "FAILED": "failure",
    "ABORTED": "failure",
}

# Finished runs kept in memory for GET /runs
RUN_HISTORY_LIMIT = 200
