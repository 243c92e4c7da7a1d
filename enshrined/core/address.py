"""Account identifier decoding.

Validators are identified on the source ledger (a Cosmos SDK chain) by bech32
operator addresses such as `orgvaloper1...`. Ordering and hashing use the
decoded 20-byte address, so the same account spelled with another
human-readable prefix normalizes to the same bytes, and a peer verifier
decoding the same ledger computes the same order.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from bech32 import bech32_decode, bech32_encode, convertbits

from enshrined.core.errors import MalformedEncoding

ADDRESS_BYTES = 20
DEFAULT_HRP = "orgvaloper"


@lru_cache(maxsize=4096)
def _decode(address: str) -> Tuple[str, bytes]:
    hrp, data = bech32_decode(address)[:2]
    if hrp is None or data is None:
        raise MalformedEncoding(f"invalid bech32 address {address!r}")
    raw = convertbits(data, 5, 8, False)
    if raw is None:
        raise MalformedEncoding(f"invalid bech32 payload in {address!r}")
    return hrp, bytes(raw)


class AddressNormalizer:
    def __init__(self, hrp: Optional[str] = None, width: int = ADDRESS_BYTES) -> None:
        # hrp=None accepts any prefix.
        self.hrp = hrp.lower() if hrp else None
        self.width = int(width)

    def normalize(self, account_id: str) -> bytes:
        if not isinstance(account_id, str) or not account_id:
            raise MalformedEncoding("account identifier must be a non-empty string")

        hrp, raw = _decode(account_id)
        if self.hrp is not None and hrp != self.hrp:
            raise MalformedEncoding(f"address {account_id!r} has prefix {hrp!r}, expected {self.hrp!r}")
        if len(raw) != self.width:
            raise MalformedEncoding(
                f"address {account_id!r} decodes to {len(raw)} bytes, expected {self.width}"
            )
        return raw

    __call__ = normalize

    def encode(self, raw: bytes, hrp: Optional[str] = None) -> str:
        if len(raw) != self.width:
            raise MalformedEncoding(f"address must be {self.width} bytes, got {len(raw)}")
        prefix = hrp or self.hrp or DEFAULT_HRP
        return bech32_encode(prefix, convertbits(bytes(raw), 8, 5))


default_normalizer = AddressNormalizer()
