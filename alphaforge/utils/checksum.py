"""
Request signing for the broker's checksum-authenticated endpoints.

checksum = sha256(timestamp + compact_json(payload) + api_secret), hex encoded.
"""
import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

_WHITESPACE = re.compile(r"\s+")


def compact_json(payload: Optional[Mapping[str, Any]]) -> str:
    """
    Canonical compact JSON for checksum input.

    Key order is preserved (the broker hashes the body as sent) and all
    whitespace is stripped, so formatting differences never change the digest.
    """
    text = json.dumps(payload or {}, separators=(",", ":"), ensure_ascii=False, default=str)
    return _WHITESPACE.sub("", text)


def calculate_checksum(timestamp: str, payload: Optional[Mapping[str, Any]], secret_key: str) -> str:
    """
    Calculate the broker checksum.

    Args:
        timestamp: Value sent in the X-Timestamp header
        payload: Request body (empty for GET)
        secret_key: User's API secret

    Returns:
        Lowercase hex SHA-256 digest
    """
    checksum_input = timestamp + compact_json(payload) + secret_key
    return hashlib.sha256(checksum_input.encode("utf-8")).hexdigest()


def get_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp truncated to the second, e.g. 2026-10-19T09:15:02.000Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S") + ".000Z"
