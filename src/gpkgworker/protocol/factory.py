"""Convenience constructors for protocol messages and replies."""

from __future__ import annotations

from typing import Any, Optional

from .fields import ERROR, EXPORT, GET_TILE, PROGRESS, SUCCESS
from .message import Message, Response


def request(kind: str, id: Optional[str] = None, data: Any = None, **fields) -> Message:
    return Message(kind, id, data, **fields)


def export(id: str, command: str, data: Any = None, **fields) -> Message:
    return Message(EXPORT, id, data, command=command, **fields)


def success(original: Message, data: Any = None, **fields) -> Response:
    """Wrap a successful result for *original*; its data payload is dropped."""
    return Response(SUCCESS, original.stripped(), data, **fields)


def error(original: Message, reason: Any) -> Response:
    """Create an error reply. Anything potentially large that was part of
    the original request is not sent back, only the reason for the failure.
    """

    if isinstance(reason, BaseException):
        text = str(reason)
        if not text:
            text = type(reason).__name__
        reason = text

    return Response(ERROR, original.stripped(), reason=str(reason))


def progress(original: Message, count: int) -> Response:
    """Create a progress reply for an export feature batch."""

    message = Message(EXPORT, original.id, command=PROGRESS,
                      tableName=original.table, count=count)
    return Response(SUCCESS, message, count=count)


def tile_key(message: Message) -> str:
    """Return the key used to match a tile reply to the placeholder that
    is waiting for it. The tile coordinate is used when the request has
    one, otherwise the requested extent.
    """

    address = message.get('tileCoord') or message.get('extent') or ()
    address = ','.join(str(value) for value in address)
    return '#'.join((str(message.id), GET_TILE, str(message.table), address))
