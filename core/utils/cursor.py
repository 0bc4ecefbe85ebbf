from __future__ import annotations

import base64
import json
from typing import Any, Sequence, TypeVar

T = TypeVar("T")


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64url_decode(data: str) -> bytes:
    s = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(s.encode())


def encode_cursor(payload: dict[str, Any]) -> str:
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode()
    return _b64url_encode(body)


def decode_cursor(token: str) -> dict[str, Any]:
    try:
        payload = json.loads(_b64url_decode(token).decode())
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError("invalid cursor") from e
    if not isinstance(payload, dict):
        raise ValueError("invalid cursor")
    return payload


def split_page(rows: Sequence[T], limit: int) -> tuple[list[T], bool]:
    """Rows fetched with ``limit + 1`` -> (page, has_more)."""
    return list(rows[:limit]), len(rows) > limit
