from __future__ import annotations

import hashlib
from typing import Iterable, List, Optional, Sequence

from enshrined.core.address import AddressNormalizer, default_normalizer
from enshrined.core.encoding import encode_u64, length_prefixed
from enshrined.core.errors import MalformedEncoding
from enshrined.core.models import ValidatorEntry, ValsetSnapshot


def order_members(
    members: Iterable[ValidatorEntry],
    normalizer: Optional[AddressNormalizer] = None,
) -> List[ValidatorEntry]:
    """
    Sort validators by the raw bytes of their decoded operator address.

    This order is what "validator index N" means everywhere (bitmap, proof,
    commitment), so the snapshot creator, collector and verifier must all go
    through here.
    """
    norm = normalizer or default_normalizer
    keyed = [(norm.normalize(m.operator_id), m) for m in members]
    keyed.sort(key=lambda pair: pair[0])

    for (a, ma), (b, mb) in zip(keyed, keyed[1:]):
        if a == b:
            raise MalformedEncoding(
                f"duplicate operator in validator set: {ma.operator_id!r} / {mb.operator_id!r}"
            )
    return [m for _, m in keyed]


def commitment_hash(
    sorted_members: Sequence[ValidatorEntry],
    normalizer: Optional[AddressNormalizer] = None,
) -> bytes:
    norm = normalizer or default_normalizer
    h = hashlib.sha256()
    for m in sorted_members:
        h.update(length_prefixed(norm.normalize(m.operator_id)))
        h.update(length_prefixed(m.attestation_pubkey))
        h.update(encode_u64(m.voting_power))
    return h.digest()


def build_snapshot(
    snapshot_id: int,
    height: int,
    members: Iterable[ValidatorEntry],
    normalizer: Optional[AddressNormalizer] = None,
) -> ValsetSnapshot:
    ordered = order_members(members, normalizer)
    if not ordered:
        raise MalformedEncoding("validator set is empty")
    if sum(m.voting_power for m in ordered) <= 0:
        raise MalformedEncoding("validator set has zero total voting power")

    return ValsetSnapshot(
        id=snapshot_id,
        height=height,
        commitment_hash=commitment_hash(ordered, normalizer),
        members=ordered,
    )


def check_commitment(snapshot: ValsetSnapshot, normalizer: Optional[AddressNormalizer] = None) -> None:
    """Validate a snapshot received from elsewhere (chain REST, peer, disk)."""
    ordered = order_members(snapshot.members, normalizer)
    if [m.operator_id for m in ordered] != [m.operator_id for m in snapshot.members]:
        raise MalformedEncoding(f"snapshot {snapshot.id}: members are not in commitment order")
    if snapshot.total_power <= 0:
        raise MalformedEncoding(f"snapshot {snapshot.id}: zero total voting power")

    expected = commitment_hash(ordered, normalizer)
    if expected != snapshot.commitment_hash:
        raise MalformedEncoding(
            f"snapshot {snapshot.id}: commitment mismatch "
            f"(computed {expected.hex()}, claimed {snapshot.commitment_hash.hex()})"
        )
