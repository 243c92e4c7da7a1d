"""Canonical byte encoding of messages.

Every field is written with a single primitive, "uvarint length prefix, then
payload", so independent implementations only have to agree on one rule:

    origin_id | dest_id | nonce | sender_module | recipient_module | body | valset_id

Strings are UTF-8, u64 values are an 8-byte big-endian payload (prefix 0x08).
The digest is one SHA-256 pass over the concatenation; there is no extra
domain tag.
"""

from __future__ import annotations

import hashlib
from typing import Tuple

from enshrined.core.errors import MalformedEncoding
from enshrined.core.models import U64_MAX, Message

DEFAULT_MAX_BODY_BYTES = 64 * 1024
ROUTE_SEPARATOR = "|"


def encode_uvarint(value: int) -> bytes:
    # Same bytes as Go's binary.PutUvarint.
    if value < 0:
        raise MalformedEncoding(f"uvarint must be non-negative, got {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def length_prefixed(data: bytes) -> bytes:
    return encode_uvarint(len(data)) + bytes(data)


def encode_string(value: str) -> bytes:
    try:
        raw = value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise MalformedEncoding(f"string is not valid UTF-8: {exc}") from exc
    return length_prefixed(raw)


def encode_u64(value: int) -> bytes:
    if not 0 <= int(value) <= U64_MAX:
        raise MalformedEncoding(f"value {value} does not fit in u64")
    return length_prefixed(int(value).to_bytes(8, "big"))


def encode_message(msg: Message, *, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> bytes:
    # Reject before doing any work; never truncate.
    if len(msg.body) > max_body_bytes:
        raise MalformedEncoding(f"body is {len(msg.body)} bytes, cap is {max_body_bytes}")

    return b"".join(
        (
            encode_string(msg.origin_id),
            encode_string(msg.dest_id),
            encode_u64(msg.nonce),
            encode_string(msg.sender_module),
            encode_string(msg.recipient_module),
            length_prefixed(msg.body),
            encode_u64(msg.valset_id),
        )
    )


def message_digest(msg: Message, *, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> bytes:
    return hashlib.sha256(encode_message(msg, max_body_bytes=max_body_bytes)).digest()


class CanonicalEncoder:
    """Stateless encoder bound to a body cap; safe to share across threads."""

    def __init__(self, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> None:
        if max_body_bytes < 0:
            raise ValueError("max_body_bytes must be >= 0")
        self.max_body_bytes = int(max_body_bytes)

    def encode(self, msg: Message) -> bytes:
        return encode_message(msg, max_body_bytes=self.max_body_bytes)

    def digest(self, msg: Message) -> bytes:
        return message_digest(msg, max_body_bytes=self.max_body_bytes)


def format_route(origin_id: str, dest_id: str, recipient_module: str) -> str:
    parts = (origin_id, dest_id, recipient_module)
    for p in parts:
        if not p or ROUTE_SEPARATOR in p:
            raise MalformedEncoding(f"invalid route component {p!r}")
    return ROUTE_SEPARATOR.join(parts)


def parse_route(route: str) -> Tuple[str, str, str]:
    parts = route.split(ROUTE_SEPARATOR)
    if len(parts) != 3 or not all(parts):
        raise MalformedEncoding(f"invalid route {route!r} (expected origin|dest|recipient)")
    return parts[0], parts[1], parts[2]
