"""Opaque, signed cursors for message pagination.

A cursor names the boundary message of a page by ``(id, createdAt)``. The
payload is compact JSON in url-safe base64, followed by a truncated
HMAC-SHA256 tag so a hand-edited cursor is rejected rather than silently
pointing somewhere else.
"""

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import List, Optional, Sequence

from convochat.errors import InvalidCursorError
from convochat.models import MessageOut, MessagePage

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_SIG_BYTES = 12


@dataclass(frozen=True)
class CursorData:
    id: str
    created_at: float


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def _sign(payload: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return _b64encode(digest[:_SIG_BYTES])


def encode_cursor(data: CursorData, secret: str) -> str:
    body = json.dumps({"id": data.id, "createdAt": data.created_at}, separators=(",", ":"))
    payload = _b64encode(body.encode("utf-8"))
    return f"{payload}.{_sign(payload, secret)}"


def decode_cursor(cursor: str, secret: str) -> CursorData:
    if not isinstance(cursor, str) or cursor.count(".") != 1:
        raise InvalidCursorError()
    payload, signature = cursor.split(".")
    expected = _sign(payload, secret).encode("ascii")
    if not payload or not hmac.compare_digest(expected, signature.encode("utf-8")):
        raise InvalidCursorError()
    try:
        data = json.loads(_b64decode(payload).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise InvalidCursorError() from exc

    if not isinstance(data, dict) or set(data) != {"id", "createdAt"}:
        raise InvalidCursorError()
    msg_id, created_at = data["id"], data["createdAt"]
    if not isinstance(msg_id, str) or not msg_id:
        raise InvalidCursorError()
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
        raise InvalidCursorError()
    return CursorData(id=msg_id, created_at=float(created_at))


def clamp_limit(limit: Optional[int]) -> int:
    if not limit:
        return DEFAULT_LIMIT
    return min(max(int(limit), 1), MAX_LIMIT)


def build_page(
    rows: Sequence[MessageOut],
    limit: int,
    secret: str,
    direction: str = "older",
    had_cursor: bool = False,
) -> MessagePage:
    """Turn ``limit + 1`` fetched rows into a page.

    The extra row only signals that more data exists in the fetch direction.
    A page fetched from a cursor always has data on the cursor side.
    """
    has_more = len(rows) > limit
    items: List[MessageOut] = list(rows[:limit])

    next_cursor = None
    prev_cursor = None
    if has_more and items:
        last = items[-1]
        next_cursor = encode_cursor(CursorData(last.id, last.created_at), secret)
    if items:
        first = items[0]
        prev_cursor = encode_cursor(CursorData(first.id, first.created_at), secret)

    if direction == "older":
        return MessagePage(
            items=items, next_cursor=next_cursor, prev_cursor=prev_cursor,
            has_more=has_more, has_newer=had_cursor,
        )
    # Forward pages: "more" means newer rows; older rows exist behind the cursor.
    return MessagePage(
        items=items, next_cursor=next_cursor, prev_cursor=prev_cursor,
        has_more=had_cursor, has_newer=has_more,
    )
