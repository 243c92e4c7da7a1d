from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

import bittensor as bt

from enshrined.core.address import AddressNormalizer
from enshrined.core.errors import MalformedEncoding, UnknownSnapshot
from enshrined.core.models import ValsetSnapshot
from enshrined.core.valset import check_commitment

SnapshotLoader = Callable[[int], Optional[ValsetSnapshot]]


class SnapshotRegistry:
    """
    Published validator-set snapshots keyed by id.

    Snapshots never change once published (a new set gets a new id), so
    entries are cached forever and reads need no lock; the lock only guards
    publication.
    """

    def __init__(
        self,
        loader: Optional[SnapshotLoader] = None,
        normalizer: Optional[AddressNormalizer] = None,
    ) -> None:
        self._loader = loader
        self._normalizer = normalizer
        self._snapshots: Dict[int, ValsetSnapshot] = {}
        self._publish_lock = threading.Lock()

    def publish(self, snapshot: ValsetSnapshot) -> ValsetSnapshot:
        check_commitment(snapshot, self._normalizer)
        with self._publish_lock:
            existing = self._snapshots.get(snapshot.id)
            if existing is not None:
                if existing.commitment_hash != snapshot.commitment_hash:
                    raise MalformedEncoding(f"snapshot {snapshot.id} already published with a different commitment")
                return existing
            self._snapshots[snapshot.id] = snapshot
        bt.logging.info(
            f"Published valset snapshot {snapshot.id} (height={snapshot.height}, "
            f"members={len(snapshot.members)}, power={snapshot.total_power})"
        )
        return snapshot

    def get(self, snapshot_id: int) -> ValsetSnapshot:
        snap = self._snapshots.get(int(snapshot_id))
        if snap is not None:
            return snap
        if self._loader is not None:
            loaded = self._loader(int(snapshot_id))
            if loaded is not None:
                if loaded.id != int(snapshot_id):
                    raise MalformedEncoding(f"loader returned snapshot {loaded.id} for id {snapshot_id}")
                return self.publish(loaded)
        raise UnknownSnapshot(f"valset snapshot {snapshot_id} not found")

    def ids(self) -> List[int]:
        return sorted(self._snapshots)
