from __future__ import annotations

import base64
import binascii
from typing import Annotated, Any, List, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer, PrivateAttr, field_validator

U64_MAX = (1 << 64) - 1

KeyType = Literal["secp256k1", "sr25519", "ed25519"]

_FROZEN = ConfigDict(frozen=True)


def _from_wire(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("expected base64-encoded bytes") from exc
    return value


# Bytes travel as base64 in JSON (same as the chain REST gateway); Python
# callers pass real bytes.
WireBytes = Annotated[
    bytes,
    BeforeValidator(_from_wire),
    PlainSerializer(lambda b: base64.b64encode(b).decode("ascii"), return_type=str, when_used="json"),
]


class Message(BaseModel):
    model_config = _FROZEN

    origin_id: str
    dest_id: str
    nonce: int = Field(ge=0, le=U64_MAX)
    sender_module: str
    recipient_module: str
    body: WireBytes = b""
    valset_id: int = Field(ge=0, le=U64_MAX)

    @property
    def route(self) -> str:
        from enshrined.core.encoding import format_route

        return format_route(self.origin_id, self.dest_id, self.recipient_module)


class ValidatorEntry(BaseModel):
    model_config = _FROZEN

    # Bech32 operator address on the source chain (orgvaloper1...).
    operator_id: str
    # Compressed curve point for secp256k1, raw 32 bytes for sr25519/ed25519.
    attestation_pubkey: WireBytes
    voting_power: int = Field(ge=0, le=U64_MAX)
    key_type: KeyType = "secp256k1"


class ValsetSnapshot(BaseModel):
    """
    Immutable validator set capture.

    `members` are already in commitment order (see `enshrined.core.valset`):
    bit `i` of a proof bitmap refers to `members[i]`.
    """

    model_config = _FROZEN

    id: int = Field(ge=0, le=U64_MAX)
    height: int = Field(default=0, ge=0, le=U64_MAX)
    commitment_hash: WireBytes
    members: List[ValidatorEntry] = Field(default_factory=list)

    _total_power: int = PrivateAttr(default=0)

    @field_validator("commitment_hash")
    @classmethod
    def _hash_is_32_bytes(cls, v: bytes) -> bytes:
        if len(v) != 32:
            raise ValueError(f"commitment_hash must be 32 bytes, got {len(v)}")
        return v

    def model_post_init(self, __context) -> None:  # noqa: ANN001 - pydantic hook
        self._total_power = sum(m.voting_power for m in self.members)

    @property
    def total_power(self) -> int:
        return self._total_power


class AttestationProof(BaseModel):
    model_config = _FROZEN

    bitmap: WireBytes
    # One per set bit, ascending bit order.
    signatures: List[WireBytes] = Field(default_factory=list)


class VerificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    voting_power_achieved: int


class SubmitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    accepted: bool
    status: Literal["accepted", "buffered"] = "accepted"
    route: str
    nonce: int
    voting_power_achieved: int = 0
    # Nonces (in order) handed to the recipient as a result of this submission.
    released: List[int] = Field(default_factory=list)
