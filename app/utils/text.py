"""Small string helpers shared by the services."""

import hashlib
from typing import Optional


def mask_token(token: Optional[str]) -> str:
    """Return a log-safe form of a secret: only the last 4 characters are shown."""
    if not token:
        return "<none>"
    if len(token) <= 4:
        return "****"
    return f"****{token[-4:]}"


def token_scope(token: Optional[str]) -> str:
    """Stable, non-reversible namespace for per-user cache keys (never the raw token)."""
    if not token:
        return ""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
