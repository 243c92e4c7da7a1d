import sys
from pathlib import Path

# Ensure repo root is on sys.path so `import enshrined` works under all pytest import modes.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from typing import Dict, Iterable, List, Optional, Sequence  # noqa: E402

import pytest  # noqa: E402

from enshrined.core.address import default_normalizer  # noqa: E402
from enshrined.core.encoding import message_digest  # noqa: E402
from enshrined.core.models import AttestationProof, Message, ValidatorEntry, ValsetSnapshot  # noqa: E402
from enshrined.core.valset import build_snapshot  # noqa: E402
from enshrined.crypto.signers import Secp256k1Signer  # noqa: E402
from enshrined.relayer.proof import build_proof  # noqa: E402
from enshrined.relayer.signer_client import LocalSigningService  # noqa: E402


class Devnet:
    """
    Deterministic validator set: validator `i` has operator address `bytes([i + 1]) * 20`
    and secp256k1 secret `i + 1`, so commitment order equals creation order.
    """

    def __init__(self, powers: Sequence[int], snapshot_id: int = 1) -> None:
        self.signers: Dict[str, Secp256k1Signer] = {}
        members: List[ValidatorEntry] = []
        for i, power in enumerate(powers):
            operator = default_normalizer.encode(bytes([i + 1]) * 20)
            signer = Secp256k1Signer.from_hex(f"{i + 1:064x}")
            self.signers[operator] = signer
            members.append(
                ValidatorEntry(operator_id=operator, attestation_pubkey=signer.public_key, voting_power=power)
            )
        self.snapshot = build_snapshot(snapshot_id, 100, members)

    def operator(self, idx: int) -> str:
        return self.snapshot.members[idx].operator_id

    def sign(self, digest: bytes, indices: Iterable[int]) -> Dict[int, bytes]:
        return {i: self.signers[self.operator(i)].sign(digest) for i in indices}

    def proof(self, digest: bytes, indices: Iterable[int]) -> AttestationProof:
        return build_proof(self.snapshot, self.sign(digest, indices))

    def local_service(self) -> LocalSigningService:
        return LocalSigningService(dict(self.signers))

    def fetch(self, snapshot_id: int) -> Optional[ValsetSnapshot]:
        """Stands in for the source chain: only this devnet's snapshot exists."""
        return self.snapshot if snapshot_id == self.snapshot.id else None


def make_message(nonce: int = 1, *, valset_id: int = 1, body: bytes = b"hello", dest_id: str = "dstchain") -> Message:
    return Message(
        origin_id="orgchain",
        dest_id=dest_id,
        nonce=nonce,
        sender_module="hyperlane",
        recipient_module="demo",
        body=body,
        valset_id=valset_id,
    )


@pytest.fixture
def devnet() -> Devnet:
    # 5 validators x 10 power; 2/3 quorum needs 4 of them.
    return Devnet([10, 10, 10, 10, 10])


@pytest.fixture
def message() -> Message:
    return make_message()


@pytest.fixture
def digest(message: Message) -> bytes:
    return message_digest(message)


@pytest.fixture
def make_devnet():
    return Devnet


@pytest.fixture
def make_msg():
    return make_message
