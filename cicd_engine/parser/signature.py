"""
Signature Verifier
==================
Validates inbound webhook authenticity.

Recomputes HMAC-SHA256 over the exact raw request body with the shared
secret and compares it in constant time against the signature header.

BOUNDARY RULES:
    - Pure gate: no side effects beyond logging.
    - Operates on the raw bytes; never on re-serialized JSON.
    - On rejection no Build Request is created.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Literal, Optional

from cicd_engine.core.constants import SIGNATURE_PREFIX
from cicd_engine.utils.error_reasons import MISSING_HEADER, SIGNATURE_MISMATCH

logger = logging.getLogger(__name__)

Verdict = Literal["ACCEPT", "REJECTED"]


@dataclass(frozen=True)
class VerificationResult:
    verdict: Verdict
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.verdict == "ACCEPT"


ACCEPT = VerificationResult("ACCEPT")


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the header value GitHub would send for this body: ``sha256=<hex>``."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    configured_secret: str,
) -> VerificationResult:
    """
    Check a webhook signature.

    Parameters
    ----------
    raw_body : bytes
        The request body exactly as received.
    signature_header : str | None
        Value of X-Hub-Signature-256. ``sha256=<hex>`` or bare hex.
    configured_secret : str
        Shared secret. An empty secret never verifies.

    Returns
    -------
    VerificationResult
        ACCEPT, or REJECTED with reason MISSING_HEADER / SIGNATURE_MISMATCH.
    """
    if not signature_header or not signature_header.strip():
        logger.warning("Webhook rejected: %s", MISSING_HEADER)
        return VerificationResult("REJECTED", MISSING_HEADER)

    if not configured_secret:
        logger.warning("Webhook rejected: no secret configured")
        return VerificationResult("REJECTED", SIGNATURE_MISMATCH)

    presented = signature_header.strip()
    if presented.lower().startswith(SIGNATURE_PREFIX):
        presented = presented[len(SIGNATURE_PREFIX):]

    expected = compute_signature(raw_body, configured_secret)[len(SIGNATURE_PREFIX):]

    if not hmac.compare_digest(presented.lower().encode("ascii", "replace"), expected.encode("ascii")):
        logger.warning("Webhook rejected: %s (body=%d bytes)", SIGNATURE_MISMATCH, len(raw_body))
        return VerificationResult("REJECTED", SIGNATURE_MISMATCH)

    return ACCEPT
