from __future__ import annotations

from typing import Mapping

from enshrined.core.bitmap import encode_bitmap
from enshrined.core.models import AttestationProof, ValsetSnapshot


def build_proof(snapshot: ValsetSnapshot, signatures: Mapping[int, bytes]) -> AttestationProof:
    """Pack {validator index: signature} into a bitmap + signatures in ascending bit order."""
    indices = sorted(signatures)
    return AttestationProof(
        bitmap=encode_bitmap(indices, len(snapshot.members)),
        signatures=[signatures[i] for i in indices],
    )
