"""
Masking of broker credentials in log events.

Applied as the last structlog processor before rendering, so API secrets,
session tokens, one-time ``apisession`` values and checksum headers never reach
a log sink, whether they appear as keys or inside free-text messages.
"""

from __future__ import annotations

import re
from typing import Any


REDACTED = "***REDACTED***"

# Matched case-insensitively against key names, ignoring "-" and "_"
SENSITIVE_KEY_FRAGMENTS = (
    "key",
    "secret",
    "token",
    "password",
    "authorization",
    "signature",
    "checksum",
    "apisession",
    "cookie",
)

# Header value shape "token <sha256 hex>" and query-string credentials
_CHECKSUM_VALUE = re.compile(r"\btoken\s+[0-9a-fA-F]{64}\b")
_QUERY_SECRET = re.compile(r"(?i)\b(api_key|apisession|session_token)=([^&\s]+)")


def is_sensitive_key(key: Any) -> bool:
    normalized = str(key).lower().replace("-", "").replace("_", "")
    return any(fragment in normalized for fragment in SENSITIVE_KEY_FRAGMENTS)


def scrub_text(text: str) -> str:
    """Mask credential-looking substrings inside a free-text value."""
    text = _CHECKSUM_VALUE.sub(f"token {REDACTED}", text)
    return _QUERY_SECRET.sub(lambda m: f"{m.group(1)}={REDACTED}", text)


def redact(obj: Any) -> Any:
    """
    Recursively mask sensitive values.

    Dict values under a sensitive key are replaced wholesale; strings anywhere
    else are scrubbed for embedded checksums and query-string credentials.
    """
    if isinstance(obj, dict):
        return {k: REDACTED if is_sensitive_key(k) else redact(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(v) for v in obj]
    if isinstance(obj, str):
        return scrub_text(obj)
    return obj


def structlog_redaction_processor(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    return redact(event_dict)
