from __future__ import annotations

from typing import Optional

import bittensor as bt

from enshrined.core.bitmap import bitmap_length, decode_bitmap
from enshrined.core.errors import InvalidSignature, MalformedEncoding, MalformedProof, QuorumNotMet
from enshrined.core.models import AttestationProof, ValsetSnapshot, VerificationResult
from enshrined.crypto.verifiers import VerifierRegistry, default_registry


def check_threshold(numerator: int, denominator: int) -> None:
    if denominator <= 0 or not 0 < numerator <= denominator:
        raise ValueError(f"invalid quorum threshold {numerator}/{denominator}")


def meets_quorum(achieved: int, total: int, numerator: int, denominator: int) -> bool:
    """
    Integer-only quorum rule: achieved / total >= numerator / denominator.

    Examples (2/3):
    - total=50, achieved=40 -> 120 >= 100 -> True
    - total=50, achieved=30 -> 90 >= 100 -> False
    - total=30, achieved=20 -> 60 >= 60 -> True (exact boundary holds)
    """
    return int(achieved) * int(denominator) >= int(total) * int(numerator)


class QuorumVerifier:
    def __init__(self, registry: Optional[VerifierRegistry] = None) -> None:
        self.registry = registry or default_registry()

    def check_structure(self, snapshot: ValsetSnapshot, proof: AttestationProof) -> list[int]:
        """Shape checks that must pass before any signature is looked at."""
        total_members = len(snapshot.members)
        expected_len = bitmap_length(total_members)
        if len(proof.bitmap) != expected_len:
            raise MalformedProof(
                f"bitmap is {len(proof.bitmap)} bytes, expected {expected_len} for {total_members} members"
            )

        indices = decode_bitmap(proof.bitmap, total_members)
        if not indices:
            raise MalformedProof("proof has no signers")
        if len(indices) != len(proof.signatures):
            raise MalformedProof(
                f"bitmap has {len(indices)} signers but proof carries {len(proof.signatures)} signatures"
            )
        return indices

    def verify(
        self,
        digest: bytes,
        snapshot: ValsetSnapshot,
        proof: AttestationProof,
        numerator: int,
        denominator: int,
    ) -> VerificationResult:
        check_threshold(numerator, denominator)
        if len(digest) != 32:
            raise MalformedEncoding(f"digest must be 32 bytes, got {len(digest)}")

        indices = self.check_structure(snapshot, proof)

        # All-or-nothing: one bad entry voids the proof, so the tally below
        # only ever counts a fully verified signer set.
        for idx, sig in zip(indices, proof.signatures):
            member = snapshot.members[idx]
            if not self.registry.verify(member.key_type, member.attestation_pubkey, digest, sig):
                bt.logging.debug(f"snapshot {snapshot.id}: bad signature at index {idx} ({member.operator_id})")
                raise InvalidSignature(
                    f"signature for validator index {idx} ({member.operator_id}) does not verify",
                    index=idx,
                )

        achieved = sum(snapshot.members[idx].voting_power for idx in indices)
        total = snapshot.total_power

        if total <= 0 or not meets_quorum(achieved, total, numerator, denominator):
            raise QuorumNotMet(
                f"voting power {achieved}/{total} below threshold {numerator}/{denominator}",
                achieved=achieved,
                total=total,
            )
        return VerificationResult(valid=True, voting_power_achieved=achieved)
