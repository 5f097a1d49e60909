"""GitHub webhook signature verification (``X-Hub-Signature-256``)."""

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """``sha256=<hex HMAC-SHA256 of body>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check a delivery's signature header against the raw body.

    Args:
        secret: Shared webhook secret. Must be non-empty.
        body: Raw request body exactly as received.
        signature: Value of the ``X-Hub-Signature-256`` header.

    Returns:
        True if the header matches, compared in constant time.
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature)
