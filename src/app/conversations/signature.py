"""HMAC-SHA256 verification of inbound webhook bodies."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

SIGNATURE_HEADERS = (
    "x-chatra-signature",
    "x-hub-signature-256",
    "x-signature",
    "signature",
)

_PREFIX = "sha256="


def extract_signature(headers: Mapping[str, str]) -> str | None:
    """First non-empty signature header, checked in SIGNATURE_HEADERS order."""
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value.strip()
    return None


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 digest of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a raw-hex or ``sha256=``-prefixed signature in constant time."""
    if not signature or not secret:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith(_PREFIX):
        candidate = candidate[len(_PREFIX):]
    expected = compute_signature(body, secret)
    return hmac.compare_digest(
        expected.encode("ascii"), candidate.lower().encode("utf-8")
    )
