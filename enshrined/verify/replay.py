"""Per-route nonce tracking.

A route (`origin|dest|recipient`) is a channel with its own nonce sequence.
The guard's only state per route is "expecting N" plus the consumed set;
every transition goes through the store's compare-and-swap so two verifiers
racing on the same nonce cannot both win.
"""

from __future__ import annotations

import json
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Literal, Optional, Protocol, Set

import bittensor as bt
from pydantic import BaseModel, ConfigDict, Field

from enshrined.core.errors import OutOfOrder, ReplayRejected

ReplayMode = Literal["strict", "lenient"]


class RouteNonceState(BaseModel):
    model_config = ConfigDict(frozen=True)

    route: str
    next_expected_nonce: int
    consumed: Set[int] = Field(default_factory=set)
    # Lenient mode only: accepted nonces waiting for an earlier gap to close.
    pending: Set[int] = Field(default_factory=set)


class NonceStore(Protocol):
    def get(self, route: str) -> Optional[RouteNonceState]: ...

    def compare_and_swap(
        self, route: str, expected: Optional[RouteNonceState], new: RouteNonceState
    ) -> bool: ...

    def routes(self) -> List[str]: ...


class InMemoryNonceStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[str, RouteNonceState] = {}

    def get(self, route: str) -> Optional[RouteNonceState]:
        with self._lock:
            return self._states.get(route)

    def compare_and_swap(
        self, route: str, expected: Optional[RouteNonceState], new: RouteNonceState
    ) -> bool:
        with self._lock:
            if self._states.get(route) != expected:
                return False
            self._states[route] = new
            return True

    def routes(self) -> List[str]:
        with self._lock:
            return sorted(self._states)


class JsonFileNonceStore(InMemoryNonceStore):
    """
    Durable store: the whole table is rewritten on every transition with the
    temp file -> fsync -> os.replace -> fsync(dir) sequence, so the file holds
    either the old or the new table, never a torn one.

    Single writer per file; concurrent writers within the process serialize on
    the store lock.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._states = self._load()
            bt.logging.info(f"Loaded nonce state for {len(self._states)} routes from {self.path}")

    def _load(self) -> Dict[str, RouteNonceState]:
        with open(self.path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
        return {route: RouteNonceState(**item) for route, item in raw.get("routes", {}).items()}

    def _dump(self) -> None:
        data = {
            "schema": "enshrined_nonce_state_v0",
            "routes": {
                route: {
                    "route": s.route,
                    "next_expected_nonce": s.next_expected_nonce,
                    "consumed": sorted(s.consumed),
                    "pending": sorted(s.pending),
                }
                for route, s in sorted(self._states.items())
            },
        }
        encoded = json.dumps(data, indent=2, sort_keys=True)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(encoded)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)

        try:
            dir_fd = os.open(self.path.parent, os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except (OSError, AttributeError):
            pass  # O_DIRECTORY not available on all platforms

    def compare_and_swap(
        self, route: str, expected: Optional[RouteNonceState], new: RouteNonceState
    ) -> bool:
        with self._lock:
            previous = self._states.get(route)
            if previous != expected:
                return False
            self._states[route] = new
            try:
                self._dump()
            except BaseException:
                # Not durable means not accepted, whatever the failure.
                if previous is None:
                    self._states.pop(route, None)
                else:
                    self._states[route] = previous
                raise
            return True


class ReplayGuard:
    def __init__(
        self,
        store: Optional[NonceStore] = None,
        *,
        mode: ReplayMode = "strict",
        initial_nonce: int = 1,
        retain_consumed: int = 1024,
        max_pending: int = 1024,
    ) -> None:
        if mode not in ("strict", "lenient"):
            raise ValueError(f"unknown replay mode {mode!r}")
        self.store: NonceStore = store if store is not None else InMemoryNonceStore()
        self.mode: ReplayMode = mode
        self.initial_nonce = int(initial_nonce)
        self.retain_consumed = max(0, int(retain_consumed))
        self.max_pending = max(0, int(max_pending))

    def state(self, route: str) -> RouteNonceState:
        return self.store.get(route) or RouteNonceState(route=route, next_expected_nonce=self.initial_nonce)

    def _check_state(self, state: RouteNonceState, nonce: int) -> None:
        expected = state.next_expected_nonce
        if nonce < expected or nonce in state.consumed or nonce in state.pending:
            raise ReplayRejected(f"route {state.route!r}: nonce {nonce} already consumed (expecting {expected})")
        if nonce > expected and self.mode == "strict":
            raise OutOfOrder(f"route {state.route!r}: got nonce {nonce}, expecting {expected}", expected=expected)

    def check(self, route: str, nonce: int) -> None:
        """Read-only pre-check; raises ReplayRejected / OutOfOrder."""
        self._check_state(self.state(route), int(nonce))

    def release_next(self, route: str) -> Optional[int]:
        """Move the buffered nonce at the head of the route to consumed, if any."""
        while True:
            current = self.store.get(route)
            if current is None or current.next_expected_nonce not in current.pending:
                return None
            nonce = current.next_expected_nonce
            pending = set(current.pending)
            pending.discard(nonce)
            floor = nonce + 1 - self.retain_consumed
            consumed = {n for n in current.consumed | {nonce} if n >= floor}
            new = RouteNonceState(route=route, next_expected_nonce=nonce + 1, consumed=consumed, pending=pending)
            if self.store.compare_and_swap(route, current, new):
                return nonce

    def drop_pending(self, route: str) -> List[int]:
        """Forget buffered-ahead nonces of a route (their messages are gone)."""
        while True:
            current = self.store.get(route)
            if current is None or not current.pending:
                return []
            new = current.model_copy(update={"pending": set()})
            if self.store.compare_and_swap(route, current, new):
                return sorted(current.pending)

    def commit(self, route: str, nonce: int, *, release_pending: bool = True) -> List[int]:
        """
        Record `nonce` as used.

        Returns the nonces that became deliverable, in order: `[nonce, ...]`
        when it was the expected one (followed by any buffered successors
        unless `release_pending` is False), `[]` when it was buffered ahead
        of a gap (lenient mode).
        """
        nonce = int(nonce)
        while True:
            current = self.store.get(route)
            state = current or RouteNonceState(route=route, next_expected_nonce=self.initial_nonce)
            self._check_state(state, nonce)

            consumed = set(state.consumed)
            pending = set(state.pending)
            released: List[int] = []
            next_expected = state.next_expected_nonce

            if nonce == next_expected:
                consumed.add(nonce)
                released.append(nonce)
                next_expected = nonce + 1
                while release_pending and next_expected in pending:
                    pending.discard(next_expected)
                    consumed.add(next_expected)
                    released.append(next_expected)
                    next_expected += 1
            else:
                if len(pending) >= self.max_pending:
                    raise OutOfOrder(
                        f"route {route!r}: {len(pending)} nonces already buffered, expecting {next_expected}",
                        expected=next_expected,
                    )
                pending.add(nonce)

            floor = next_expected - self.retain_consumed
            consumed = {n for n in consumed if n >= floor}

            new = RouteNonceState(
                route=route,
                next_expected_nonce=next_expected,
                consumed=consumed,
                pending=pending,
            )
            if self.store.compare_and_swap(route, current, new):
                return released
            # Lost a race; re-read and re-check (a duplicate now fails the check).
            bt.logging.debug(f"route {route!r}: nonce store CAS retry for nonce {nonce}")
