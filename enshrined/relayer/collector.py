"""Concurrent attestation collection.

One task per validator asks its signing service for a signature over the
digest. Each task owns its own timeout and retry budget, so a slow or dead
signer only costs its own slot. The collector stops as soon as the signatures
it has checked reach quorum, or when the overall deadline passes, and cancels
whatever is still running.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Union

import bittensor as bt

from enshrined.core.models import ValidatorEntry, ValsetSnapshot
from enshrined.crypto.verifiers import VerifierRegistry, default_registry
from enshrined.relayer.errors import SignerUnavailable
from enshrined.relayer.signer_client import SigningService
from enshrined.verify.quorum import check_threshold, meets_quorum

ServiceResolver = Callable[[str], Optional[SigningService]]


@dataclass
class CollectionResult:
    # validator index -> locally verified signature
    signatures: Dict[int, bytes] = field(default_factory=dict)
    voting_power: int = 0
    total_power: int = 0
    quorum_met: bool = False
    timed_out: bool = False
    # operator id -> reason
    failures: Dict[str, str] = field(default_factory=dict)


class AttestationCollector:
    def __init__(
        self,
        services: Union[Mapping[str, SigningService], ServiceResolver],
        *,
        registry: Optional[VerifierRegistry] = None,
        per_signer_timeout_s: float = 5.0,
        deadline_s: float = 30.0,
        max_retries: int = 3,
        backoff_s: float = 0.5,
        backoff_max_s: float = 5.0,
    ) -> None:
        if callable(services):
            self._resolve: ServiceResolver = services
        else:
            mapping = dict(services)
            self._resolve = mapping.get
        self.registry = registry or default_registry()
        self.per_signer_timeout_s = float(per_signer_timeout_s)
        self.deadline_s = float(deadline_s)
        self.max_retries = max(0, int(max_retries))
        self.backoff_s = float(backoff_s)
        self.backoff_max_s = float(backoff_max_s)

    async def _sign_with_retry(self, service: SigningService, member: ValidatorEntry, digest: bytes) -> bytes:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    service.sign(member.operator_id, digest),
                    timeout=self.per_signer_timeout_s,
                )
            except asyncio.TimeoutError:
                err: SignerUnavailable = SignerUnavailable(
                    member.operator_id, f"no answer within {self.per_signer_timeout_s}s"
                )
            except SignerUnavailable as exc:
                err = exc

            if attempt >= self.max_retries:
                raise err
            delay = min(self.backoff_max_s, self.backoff_s * (2**attempt))
            attempt += 1
            bt.logging.debug(f"{member.operator_id}: {err.detail}; retry {attempt}/{self.max_retries} in {delay:.2f}s")
            await asyncio.sleep(delay)

    async def collect(
        self,
        digest: bytes,
        snapshot: ValsetSnapshot,
        numerator: int,
        denominator: int,
    ) -> CollectionResult:
        check_threshold(numerator, denominator)
        if len(digest) != 32:
            raise ValueError(f"digest must be 32 bytes, got {len(digest)}")

        result = CollectionResult(total_power=snapshot.total_power)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.deadline_s

        tasks: Dict[asyncio.Task, int] = {}
        for idx, member in enumerate(snapshot.members):
            service = self._resolve(member.operator_id)
            if service is None:
                result.failures[member.operator_id] = "no signing service configured"
                continue
            task = asyncio.create_task(
                self._sign_with_retry(service, member, digest),
                name=f"sign:{member.operator_id}",
            )
            tasks[task] = idx

        pending = set(tasks)
        try:
            while pending and not result.quorum_met:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    result.timed_out = True
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if not done:
                    result.timed_out = True
                    break

                for task in done:
                    idx = tasks[task]
                    member = snapshot.members[idx]
                    exc = task.exception()
                    if exc is not None:
                        result.failures[member.operator_id] = str(exc)
                        bt.logging.warning(f"Signer {member.operator_id} failed: {exc}")
                        continue

                    sig = task.result()
                    # A bad entry would void the whole proof on the destination; drop it here.
                    if not self.registry.verify(member.key_type, member.attestation_pubkey, digest, sig):
                        result.failures[member.operator_id] = "invalid signature"
                        bt.logging.warning(f"Signer {member.operator_id} returned an invalid signature")
                        continue

                    result.signatures[idx] = sig
                    result.voting_power += member.voting_power
                    if meets_quorum(result.voting_power, result.total_power, numerator, denominator):
                        result.quorum_met = True
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        bt.logging.info(
            f"Collected {len(result.signatures)}/{len(snapshot.members)} signatures for valset {snapshot.id}: "
            f"power={result.voting_power}/{result.total_power} quorum={result.quorum_met} timed_out={result.timed_out}"
        )
        return result
