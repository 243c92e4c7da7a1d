from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from enshrined.core.models import AttestationProof, Message


class DeliverRequest(BaseModel):
    message: Message
    proof: AttestationProof


class RouteNonce(BaseModel):
    route: str
    next_expected_nonce: int
    pending: list[int] = []


class ErrorBody(BaseModel):
    # Stable machine-readable kind (ReplayRejected, QuorumNotMet, ...).
    kind: str
    detail: str = ""
    retryable: bool = False


class Health(BaseModel):
    ok: bool = True
    chain_id: Optional[str] = None
    threshold: str
    replay_mode: str
    snapshots: int
