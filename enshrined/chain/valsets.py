from __future__ import annotations

import base64
from typing import Any, Dict, Optional

import requests

from enshrined.core.address import AddressNormalizer
from enshrined.core.errors import MalformedEncoding
from enshrined.core.models import ValidatorEntry, ValsetSnapshot
from enshrined.core.valset import commitment_hash, order_members

VALSET_PATH = "/enshrined-relayers/orgchain/hyperlane/v1/valset/{id}"


def _b64(value: Any, what: str) -> bytes:
    try:
        return base64.b64decode(str(value), validate=True)
    except ValueError as exc:
        raise MalformedEncoding(f"{what} is not valid base64") from exc


def parse_valset(data: Dict[str, Any], normalizer: Optional[AddressNormalizer] = None) -> ValsetSnapshot:
    """
    Turn the chain REST representation into a snapshot.

    The chain may list signers in any order; we order them ourselves and
    require the result to reproduce the hash the chain committed to.
    """
    raw = data.get("valset", data)
    members = [
        ValidatorEntry(
            operator_id=str(s["operator"]),
            attestation_pubkey=_b64(s["attestation_pubkey"], "attestation_pubkey"),
            voting_power=int(s["power"]),
            key_type=s.get("key_type") or "secp256k1",
        )
        for s in raw.get("signers", [])
    ]
    ordered = order_members(members, normalizer)
    claimed = _b64(raw.get("hash", ""), "valset hash")
    computed = commitment_hash(ordered, normalizer)
    if claimed != computed:
        raise MalformedEncoding(
            f"valset {raw.get('id')}: chain hash {claimed.hex()} != computed {computed.hex()}"
        )
    return ValsetSnapshot(
        id=int(raw["id"]),
        height=int(raw.get("height") or 0),
        commitment_hash=computed,
        members=ordered,
    )


class HttpSnapshotSource:
    """Reads valset snapshots from the source chain's REST gateway."""

    def __init__(
        self,
        rest_url: str,
        *,
        timeout_s: float = 5.0,
        normalizer: Optional[AddressNormalizer] = None,
    ) -> None:
        self.rest_url = rest_url.rstrip("/")
        self.timeout_s = timeout_s
        self.normalizer = normalizer

    def fetch(self, snapshot_id: int) -> Optional[ValsetSnapshot]:
        r = requests.get(f"{self.rest_url}{VALSET_PATH.format(id=int(snapshot_id))}", timeout=self.timeout_s)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise MalformedEncoding(f"valset {snapshot_id}: unexpected response shape")
        return parse_valset(data, self.normalizer)
