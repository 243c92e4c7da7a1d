from __future__ import annotations

import asyncio
import traceback
from typing import Callable, List, Optional, Protocol, Set

import bittensor as bt

from enshrined.chain.events import HttpEventSource, SendEvent
from enshrined.chain.valsets import HttpSnapshotSource
from enshrined.config import RelayerEnvConfig
from enshrined.core.encoding import DEFAULT_MAX_BODY_BYTES, message_digest, parse_route
from enshrined.core.errors import ReplayRejected
from enshrined.core.models import AttestationProof, Message, SubmitResult, ValsetSnapshot
from enshrined.relayer.collector import AttestationCollector
from enshrined.relayer.destination_client import DestinationClient
from enshrined.relayer.errors import CollectionFailed, DigestMismatch
from enshrined.relayer.proof import build_proof
from enshrined.relayer.signer_client import HttpSigningService
from enshrined.verify.quorum import check_threshold
from enshrined.verify.snapshots import SnapshotRegistry

SubmitFn = Callable[[Message, AttestationProof], SubmitResult]
# from_height -> events at or above that height
FetchEventsFn = Callable[[int], List[SendEvent]]


class SnapshotLookup(Protocol):
    def get(self, snapshot_id: int) -> ValsetSnapshot: ...


class Relayer:
    def __init__(
        self,
        *,
        dest_chain_id: str,
        snapshots: SnapshotLookup,
        collector: AttestationCollector,
        submit: SubmitFn,
        threshold_numerator: int = 2,
        threshold_denominator: int = 3,
        max_attempts: int = 3,
        retry_interval_s: float = 1.0,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ) -> None:
        check_threshold(threshold_numerator, threshold_denominator)
        self.dest_chain_id = dest_chain_id
        self.snapshots = snapshots
        self.collector = collector
        self.submit = submit
        self.threshold_numerator = int(threshold_numerator)
        self.threshold_denominator = int(threshold_denominator)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_interval_s = float(retry_interval_s)
        self.max_body_bytes = int(max_body_bytes)
        self._processed: Set[str] = set()

    @staticmethod
    def event_key(event: SendEvent) -> str:
        return f"{event.route}:{event.nonce}"

    def is_processed(self, event: SendEvent) -> bool:
        return self.event_key(event) in self._processed

    def _build_message(self, event: SendEvent) -> Message:
        origin, dest, recipient = parse_route(event.route)
        if event.recipient_module and event.recipient_module != recipient:
            raise DigestMismatch(
                f"event recipient {event.recipient_module!r} disagrees with route {event.route!r}"
            )
        return Message(
            origin_id=origin,
            dest_id=dest,
            nonce=event.nonce,
            sender_module=event.sender_module,
            recipient_module=recipient,
            body=event.body,
            valset_id=event.valset_id,
        )

    async def process_event(self, event: SendEvent) -> Optional[SubmitResult]:
        key = self.event_key(event)
        if key in self._processed:
            return None

        try:
            message = self._build_message(event)
        except DigestMismatch:
            # Retrying cannot change the event; never pick it up again.
            self._processed.add(key)
            raise
        if message.dest_id != self.dest_chain_id:
            bt.logging.warning(f"Skipping {key}: destination {message.dest_id!r} is not {self.dest_chain_id!r}")
            self._processed.add(key)
            return None

        digest = message_digest(message, max_body_bytes=self.max_body_bytes)
        if digest.hex() != event.digest_hex.lower().removeprefix("0x"):
            self._processed.add(key)
            raise DigestMismatch(f"{key}: computed {digest.hex()}, event says {event.digest_hex}")

        bt.logging.info(f"Processing {key} (valset {event.valset_id})")
        last_power, last_total = 0, 0
        for attempt in range(1, self.max_attempts + 1):
            # Every attempt starts from scratch: signatures from an abandoned
            # attempt are never carried over.
            snapshot = await asyncio.to_thread(self.snapshots.get, message.valset_id)
            result = await self.collector.collect(
                digest, snapshot, self.threshold_numerator, self.threshold_denominator
            )
            last_power, last_total = result.voting_power, result.total_power
            if result.quorum_met:
                proof = build_proof(snapshot, result.signatures)
                try:
                    submitted = await asyncio.to_thread(self.submit, message, proof)
                except ReplayRejected:
                    bt.logging.info(f"{key} already delivered on the destination")
                    self._processed.add(key)
                    return None
                self._processed.add(key)
                bt.logging.info(f"Delivered {key}: status={submitted.status} power={submitted.voting_power_achieved}")
                return submitted

            bt.logging.warning(
                f"{key}: attempt {attempt}/{self.max_attempts} reached {result.voting_power}/{result.total_power}"
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_interval_s)

        raise CollectionFailed(
            f"{key}: quorum not reached after {self.max_attempts} attempts",
            achieved=last_power,
            total=last_total,
        )

    async def run_once(self, events: List[SendEvent]) -> List[SubmitResult]:
        """Process a batch of discovered events; a failing event is retried on the next batch."""
        out: List[SubmitResult] = []
        for event in events:
            try:
                res = await self.process_event(event)
            except Exception:
                bt.logging.error(f"Failed to process {self.event_key(event)}:\n{traceback.format_exc()}")
                continue
            if res is not None:
                out.append(res)
        return out

    def next_height(self, events: List[SendEvent], current: int) -> int:
        """Lowest height still holding unprocessed work, else the highest height seen."""
        pending = [e.height for e in events if not self.is_processed(e)]
        if pending:
            return max(current, min(pending))
        if events:
            return max(current, max(e.height for e in events))
        return current

    async def run_forever(
        self,
        fetch_events: FetchEventsFn,
        *,
        poll_interval_s: float,
        stop: asyncio.Event,
        start_height: int = 0,
    ) -> None:
        """
        Poll for send events and relay them until `stop` is set.

        A poll that fails is logged and retried after the interval; events
        that fail to relay are fetched again on the next poll.
        """
        height = int(start_height)
        bt.logging.info(f"Relayer polling every {poll_interval_s}s from height {height}")
        while not stop.is_set():
            try:
                events = await asyncio.to_thread(fetch_events, height)
                if events:
                    await self.run_once(events)
                height = self.next_height(events, height)
            except Exception:
                bt.logging.error(f"Relayer poll failed:\n{traceback.format_exc()}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval_s)
            except asyncio.TimeoutError:
                pass
        bt.logging.info("Relayer stopped")


def build_event_source(cfg: RelayerEnvConfig) -> HttpEventSource:
    return HttpEventSource(cfg.origin_rest_url, timeout_s=cfg.signer_timeout_s)


def build_relayer(cfg: RelayerEnvConfig) -> Relayer:
    clients = {url: HttpSigningService(url, timeout_s=cfg.signer_timeout_s) for url in set(cfg.signer_urls.values())}
    default = HttpSigningService(cfg.default_signer_url, timeout_s=cfg.signer_timeout_s) if cfg.default_signer_url else None

    def resolve(operator_id: str) -> Optional[HttpSigningService]:
        url = cfg.signer_urls.get(operator_id)
        return clients[url] if url else default

    collector = AttestationCollector(
        resolve,
        per_signer_timeout_s=cfg.signer_timeout_s,
        deadline_s=cfg.collection_deadline_s,
        max_retries=cfg.signer_max_retries,
        backoff_s=cfg.signer_backoff_s,
    )
    source = HttpSnapshotSource(cfg.origin_rest_url, timeout_s=cfg.signer_timeout_s)
    return Relayer(
        dest_chain_id=cfg.dest_chain_id,
        snapshots=SnapshotRegistry(loader=source.fetch),
        collector=collector,
        submit=DestinationClient(cfg.dest_api_url).submit,
        threshold_numerator=cfg.threshold_numerator,
        threshold_denominator=cfg.threshold_denominator,
        max_attempts=cfg.max_attempts,
        retry_interval_s=cfg.retry_interval_s,
        max_body_bytes=cfg.max_body_bytes,
    )
