"""Multipart framing for protocol messages.

Every envelope becomes four frames:

    version, type, header_json, bulk

where *type* is ``REQ`` for a :class:`Message` and ``REP`` for a
:class:`Response`. Binary data (package bytes, tile images, export chunks)
always travels in the bulk frame; anything else that is not ``None`` is
encoded in the JSON header.
"""

from __future__ import annotations

from typing import Any, Sequence, Tuple, Union

from .. import json
from .message import Message, Response, PROTOCOL_VERSION


_VERSION_BYTES = PROTOCOL_VERSION.encode()

REQ = b"REQ"
REP = b"REP"


class FramingError(ValueError):
    """The frames received do not describe a valid envelope."""


def _split_data(data: Any) -> Tuple[Any, bytes, bool]:
    """Return (json_data, bulk_bytes, is_bulk) for a data payload."""

    if isinstance(data, (bytes, bytearray, memoryview)):
        return None, bytes(data), True

    return data, b"", False


def pack(envelope: Union[Message, Response]) -> Tuple[bytes, ...]:
    """Encode a Message or Response as a tuple of frames."""

    if isinstance(envelope, Response):
        json_data, bulk, is_bulk = _split_data(envelope.data)
        header = {
            "status": envelope.status,
            "reason": envelope.reason,
            "message": envelope.message.to_dict(),
            "data": json_data,
            "bulk": is_bulk,
            "fields": envelope.fields,
        }
        kind = REP

    elif isinstance(envelope, Message):
        json_data, bulk, is_bulk = _split_data(envelope.data)
        header = {
            "message": envelope.to_dict(),
            "data": json_data,
            "bulk": is_bulk,
        }
        kind = REQ

    else:
        raise TypeError(f"cannot frame {type(envelope).__name__}")

    return (_VERSION_BYTES, kind, json.dumps(header), bulk)


def unpack(parts: Sequence[bytes]) -> Union[Message, Response]:
    """Decode frames produced by :func:`pack`."""

    if len(parts) != 4:
        raise FramingError(f"expected 4 frames, received {len(parts)}")

    their_version, kind, header, bulk = parts

    if their_version != _VERSION_BYTES:
        raise FramingError(
            f"message is protocol {their_version!r}, recipient expects {_VERSION_BYTES!r}"
        )

    header = json.loads(header)

    if header.get("bulk"):
        data = bytes(bulk)
    else:
        data = header.get("data")

    if kind == REQ:
        return Message.from_dict(header["message"], data)

    if kind == REP:
        message = Message.from_dict(header["message"])
        fields = header.get("fields") or {}
        return Response(header["status"], message, data, header.get("reason"), **fields)

    raise FramingError(f"unknown envelope type {kind!r}")
