"""Destination-side entry point: `DeliveryGateway.submit(message, proof)`.

Checks run cheapest first: snapshot lookup, addressing, canonical encoding,
replay pre-check, proof shape, then signatures. The replay check, the
verification, the hand-over to the recipient and the nonce commit for one
route run in that order under the route's lock, so concurrent submissions of
the same (route, nonce) resolve to exactly one acceptance and
`ReplayRejected` for the rest.
"""

from __future__ import annotations

import threading
import traceback
from typing import Callable, Dict, List, Optional, Tuple

import bittensor as bt

from enshrined.chain.valsets import HttpSnapshotSource
from enshrined.config import VerifierEnvConfig
from enshrined.core.address import AddressNormalizer
from enshrined.core.encoding import DEFAULT_MAX_BODY_BYTES, CanonicalEncoder
from enshrined.core.errors import AttestationError, MalformedEncoding
from enshrined.core.models import AttestationProof, Message, SubmitResult
from enshrined.verify.quorum import QuorumVerifier, check_threshold
from enshrined.verify.replay import InMemoryNonceStore, JsonFileNonceStore, ReplayGuard
from enshrined.verify.snapshots import SnapshotRegistry

DeliverFn = Callable[[Message], None]


class DeliveryGateway:
    def __init__(
        self,
        snapshots: SnapshotRegistry,
        *,
        verifier: Optional[QuorumVerifier] = None,
        guard: Optional[ReplayGuard] = None,
        threshold_numerator: int = 2,
        threshold_denominator: int = 3,
        chain_id: Optional[str] = None,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        on_deliver: Optional[DeliverFn] = None,
    ) -> None:
        check_threshold(threshold_numerator, threshold_denominator)
        self.snapshots = snapshots
        self.verifier = verifier or QuorumVerifier()
        self.guard = guard or ReplayGuard()
        self.threshold_numerator = int(threshold_numerator)
        self.threshold_denominator = int(threshold_denominator)
        self.chain_id = chain_id or None
        self.encoder = CanonicalEncoder(max_body_bytes)
        self.on_deliver = on_deliver

        self._locks_guard = threading.Lock()
        self._route_locks: Dict[str, threading.Lock] = {}
        # Lenient mode: verified messages waiting for an earlier nonce.
        self._buffered: Dict[Tuple[str, int], Message] = {}

        if self.guard.mode == "lenient":
            # Buffered messages do not survive a restart; free their nonces so
            # relayers can deliver them again.
            for route in self.guard.store.routes():
                dropped = self.guard.drop_pending(route)
                if dropped:
                    bt.logging.warning(f"route {route!r}: dropped {len(dropped)} buffered nonces from a previous run")

    def _route_lock(self, route: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._route_locks.get(route)
            if lock is None:
                lock = threading.Lock()
                self._route_locks[route] = lock
            return lock

    def submit(self, message: Message, proof: AttestationProof) -> SubmitResult:
        try:
            return self._submit(message, proof)
        except AttestationError as exc:
            bt.logging.warning(
                f"Rejected message valset={message.valset_id} nonce={message.nonce}: {exc.kind.value}: {exc}"
            )
            raise

    def _submit(self, message: Message, proof: AttestationProof) -> SubmitResult:
        snapshot = self.snapshots.get(message.valset_id)

        if self.chain_id is not None and message.dest_id != self.chain_id:
            raise MalformedEncoding(f"message for {message.dest_id!r} submitted to {self.chain_id!r}")

        route = message.route
        digest = self.encoder.digest(message)

        with self._route_lock(route):
            released = self._flush(route)
            self.guard.check(route, message.nonce)
            result = self.verifier.verify(
                digest,
                snapshot,
                proof,
                self.threshold_numerator,
                self.threshold_denominator,
            )

            if message.nonce != self.next_nonce(route):
                # Lenient mode, ahead of a gap: reserve the nonce and hold the message.
                self.guard.commit(route, message.nonce, release_pending=False)
                self._buffered[(route, message.nonce)] = message
                bt.logging.info(f"Buffered {route} nonce={message.nonce} (power={result.voting_power_achieved})")
                return SubmitResult(
                    accepted=False,
                    status="buffered",
                    route=route,
                    nonce=message.nonce,
                    voting_power_achieved=result.voting_power_achieved,
                )

            # Hand over first: a failing handler leaves the nonce unconsumed so
            # the message can be submitted again.
            try:
                self._hand_over(message)
            except Exception:
                bt.logging.error(f"Recipient handler failed for {route} nonce={message.nonce}; nonce not consumed")
                raise
            self.guard.commit(route, message.nonce, release_pending=False)
            released.append(message.nonce)
            released.extend(self._flush(route))

        bt.logging.info(
            f"Accepted {route} nonce={message.nonce} digest={digest.hex()} "
            f"power={result.voting_power_achieved}/{snapshot.total_power}"
        )
        return SubmitResult(
            accepted=True,
            status="accepted",
            route=route,
            nonce=message.nonce,
            voting_power_achieved=result.voting_power_achieved,
            released=released,
        )

    def _hand_over(self, message: Message) -> None:
        if self.on_deliver is not None:
            self.on_deliver(message)

    def _flush(self, route: str) -> List[int]:
        """
        Hand buffered successors of the route over in nonce order.

        Stops at the first handler failure; that message stays buffered (its
        nonce reserved) and is retried on the next submission or
        `retry_buffered` call for the route.
        """
        delivered: List[int] = []
        while True:
            state = self.guard.state(route)
            nonce = state.next_expected_nonce
            message = self._buffered.get((route, nonce))
            if message is None or nonce not in state.pending:
                return delivered
            try:
                self._hand_over(message)
            except Exception:
                bt.logging.error(
                    f"Recipient handler failed for buffered {route} nonce={nonce}; kept for retry:\n"
                    f"{traceback.format_exc()}"
                )
                return delivered
            self.guard.release_next(route)
            del self._buffered[(route, nonce)]
            delivered.append(nonce)

    def retry_buffered(self, route: str) -> List[int]:
        with self._route_lock(route):
            return self._flush(route)

    def next_nonce(self, route: str) -> int:
        return self.guard.state(route).next_expected_nonce


def build_gateway(cfg: VerifierEnvConfig, *, on_deliver: Optional[DeliverFn] = None) -> DeliveryGateway:
    normalizer = AddressNormalizer(hrp=cfg.address_hrp)
    loader = None
    if cfg.origin_rest_url:
        # Validator sets come only from the source chain; nothing else can publish one.
        loader = HttpSnapshotSource(cfg.origin_rest_url, normalizer=normalizer).fetch
    else:
        bt.logging.warning("ENSHRINED_ORIGIN_REST_URL not set: no validator sets can be loaded")
    store = JsonFileNonceStore(cfg.state_path) if cfg.state_path else InMemoryNonceStore()
    if cfg.state_path is None:
        bt.logging.warning("ENSHRINED_STATE_PATH not set: nonce state is in-memory and lost on restart")
    guard = ReplayGuard(
        store,
        mode=cfg.replay_mode,
        initial_nonce=cfg.initial_nonce,
        retain_consumed=cfg.retain_consumed,
    )
    return DeliveryGateway(
        SnapshotRegistry(loader=loader, normalizer=normalizer),
        guard=guard,
        threshold_numerator=cfg.threshold_numerator,
        threshold_denominator=cfg.threshold_denominator,
        chain_id=cfg.chain_id,
        max_body_bytes=cfg.max_body_bytes,
        on_deliver=on_deliver,
    )
