"""
Utility functions for vastunwrap.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from datetime import datetime, timezone
from typing import Any

import orjson


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())


def current_datetime() -> datetime:
    """Get current datetime in UTC."""
    return datetime.now(timezone.utc)


def json_dumps_bytes(obj: Any) -> bytes:
    """Fast JSON serialization using orjson."""
    return orjson.dumps(obj)


def json_loads(s: str | bytes) -> Any:
    """Fast JSON deserialization using orjson."""
    return orjson.loads(s)


def b64decode_text(value: str) -> str:
    """
    Decode a base64 (standard or URL-safe, padding optional) value to UTF-8.

    Raises:
        ValueError: If the value is not valid base64 or not UTF-8.
    """
    raw = value.strip().replace("-", "+").replace("_", "/")
    raw += "=" * (-len(raw) % 4)
    try:
        return base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"invalid base64 value: {e}") from e


def dedupe(lst: list[Any]) -> list[Any]:
    """Remove duplicates while preserving order."""
    seen: set[Any] = set()
    result: list[Any] = []
    for item in lst:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result
