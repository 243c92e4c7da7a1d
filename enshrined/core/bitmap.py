"""Signer bitmaps.

Bit `i` lives at byte `i // 8`, bit position `i % 8` (LSB first), over a
buffer of `ceil(total / 8)` bytes. Index `i` is the position of the validator
in the snapshot's commitment order.
"""

from __future__ import annotations

from typing import Iterable, List, Union

from enshrined.core.errors import MalformedProof

Buffer = Union[bytes, bytearray]


def bitmap_length(total_members: int) -> int:
    return (int(total_members) + 7) // 8


def encode_bitmap(indices: Iterable[int], total_members: int) -> bytes:
    out = bytearray(bitmap_length(total_members))
    for idx in indices:
        if not 0 <= idx < total_members:
            raise MalformedProof(f"validator index {idx} out of range for {total_members} members")
        out[idx // 8] |= 1 << (idx % 8)
    return bytes(out)


def decode_bitmap(bitmap: Buffer, total_members: int) -> List[int]:
    indices: List[int] = []
    for byte_idx, value in enumerate(bitmap):
        if not value:
            continue
        for bit in range(8):
            idx = byte_idx * 8 + bit
            if idx >= total_members:
                # Padding bits past the set are ignored.
                return indices
            if value & (1 << bit):
                indices.append(idx)
    return indices


def is_set(bitmap: Buffer, index: int) -> bool:
    byte_idx = index // 8
    if index < 0 or byte_idx >= len(bitmap):
        return False
    return bool(bitmap[byte_idx] & (1 << (index % 8)))


def set_bit(bitmap: bytearray, index: int) -> None:
    byte_idx = index // 8
    if 0 <= index and byte_idx < len(bitmap):
        bitmap[byte_idx] |= 1 << (index % 8)


def clear_bit(bitmap: bytearray, index: int) -> None:
    byte_idx = index // 8
    if 0 <= index and byte_idx < len(bitmap):
        bitmap[byte_idx] &= ~(1 << (index % 8)) & 0xFF


def count_set_bits(bitmap: Buffer, total_members: int) -> int:
    return len(decode_bitmap(bitmap, total_members))
