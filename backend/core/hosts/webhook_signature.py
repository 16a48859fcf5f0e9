"""HMAC-SHA256 verification of repository host webhook payloads."""

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check an X-Hub-Signature-256 header against the payload.

    With no secret configured every payload is accepted; with a secret, a
    missing or malformed signature is rejected. Comparison is constant time.
    """
    if not secret:
        return True
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature)
