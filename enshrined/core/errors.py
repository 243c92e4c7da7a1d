from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    MALFORMED_ENCODING = "MalformedEncoding"
    MALFORMED_PROOF = "MalformedProof"
    INVALID_SIGNATURE = "InvalidSignature"
    QUORUM_NOT_MET = "QuorumNotMet"
    REPLAY_REJECTED = "ReplayRejected"
    OUT_OF_ORDER = "OutOfOrder"
    UNKNOWN_SNAPSHOT = "UnknownSnapshot"


class AttestationError(Exception):
    """
    Terminal failure for one submission.

    `kind` is stable and meant for machines (relayers decide whether to retry
    from it); the message is for humans only.
    """

    kind: ErrorKind
    retryable: bool = False

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind.value)
        self.detail = detail

    def to_payload(self) -> dict:
        return {"kind": self.kind.value, "detail": self.detail, "retryable": self.retryable}


class MalformedEncoding(AttestationError):
    kind = ErrorKind.MALFORMED_ENCODING


class MalformedProof(AttestationError):
    kind = ErrorKind.MALFORMED_PROOF


class InvalidSignature(AttestationError):
    kind = ErrorKind.INVALID_SIGNATURE

    def __init__(self, detail: str = "", *, index: Optional[int] = None) -> None:
        super().__init__(detail)
        self.index = index


class QuorumNotMet(AttestationError):
    kind = ErrorKind.QUORUM_NOT_MET
    # More signers may still respond.
    retryable = True

    def __init__(self, detail: str = "", *, achieved: int = 0, total: int = 0) -> None:
        super().__init__(detail)
        self.achieved = achieved
        self.total = total


class ReplayRejected(AttestationError):
    kind = ErrorKind.REPLAY_REJECTED


class OutOfOrder(AttestationError):
    kind = ErrorKind.OUT_OF_ORDER
    retryable = True

    def __init__(self, detail: str = "", *, expected: int = 0) -> None:
        super().__init__(detail)
        self.expected = expected


class UnknownSnapshot(AttestationError):
    kind = ErrorKind.UNKNOWN_SNAPSHOT
    # The snapshot may simply not be published on this side yet.
    retryable = True


_BY_KIND = {
    cls.kind: cls
    for cls in (
        MalformedEncoding,
        MalformedProof,
        InvalidSignature,
        QuorumNotMet,
        ReplayRejected,
        OutOfOrder,
        UnknownSnapshot,
    )
}


def error_from_payload(payload: dict) -> Optional[AttestationError]:
    """Rebuild the typed error from a `{"kind", "detail"}` body (HTTP clients)."""
    try:
        kind = ErrorKind(payload.get("kind"))
    except ValueError:
        return None
    return _BY_KIND[kind](str(payload.get("detail") or ""))
