"""HMAC-SHA256 verification of webhook bodies.

Both Jira and GitHub sign the raw request body with a shared secret and
send the hex digest in a header, GitHub with a "sha256=" prefix.
"""

import hashlib
import hmac
from typing import Optional


SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, header: Optional[str]) -> bool:
    """Check a webhook signature header against the body.

    An unset secret disables verification.

    Args:
        secret: Shared webhook secret.
        body: Raw request body.
        header: Signature header value, with or without "sha256=".

    Returns:
        True when verification is disabled or the signature matches.
    """
    if not secret:
        return True
    if not header:
        return False
    received = header.strip()
    if received.startswith(SIGNATURE_PREFIX):
        received = received[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(compute_signature(secret, body), received.lower())
