import asyncio
import time

import pytest

from enshrined.relayer.collector import AttestationCollector
from enshrined.relayer.errors import SignerRejected, SignerUnavailable


class _Slow:
    def __init__(self) -> None:
        self.cancelled = False

    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return b""


class _Down:
    def __init__(self) -> None:
        self.calls = 0

    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        self.calls += 1
        raise SignerUnavailable(operator_id, "connection refused")


class _Rejecting:
    def __init__(self) -> None:
        self.calls = 0

    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        self.calls += 1
        raise SignerRejected(operator_id, "unknown operator")


class _Flaky:
    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise SignerUnavailable(operator_id, "503")
        return await self.inner.sign(operator_id, digest)


class _Garbage:
    async def sign(self, operator_id: str, digest: bytes) -> bytes:
        return b"\x01" * 64


def _services(devnet, overrides):
    local = devnet.local_service()
    out = {devnet.operator(i): local for i in range(len(devnet.snapshot.members))}
    for idx, svc in overrides.items():
        if svc is None:
            out.pop(devnet.operator(idx))
        else:
            out[devnet.operator(idx)] = svc
    return out


def _collector(services, **kwargs):
    params = dict(per_signer_timeout_s=1.0, deadline_s=5.0, max_retries=0, backoff_s=0.01)
    params.update(kwargs)
    return AttestationCollector(services, **params)


def test_all_signers_reach_quorum(devnet, digest):
    result = asyncio.run(_collector(_services(devnet, {})).collect(digest, devnet.snapshot, 2, 3))
    assert result.quorum_met is True
    assert result.voting_power >= 40
    assert result.total_power == 50
    assert result.timed_out is False


def test_slow_signer_does_not_block_quorum(devnet, digest):
    slow = _Slow()
    collector = _collector(_services(devnet, {4: slow}), per_signer_timeout_s=5.0, deadline_s=5.0)

    started = time.monotonic()
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))

    assert time.monotonic() - started < 2.0
    assert result.quorum_met is True
    assert sorted(result.signatures) == [0, 1, 2, 3]
    assert slow.cancelled is True


def test_failing_signers_leave_quorum_unmet(devnet, digest):
    down_a, down_b = _Down(), _Down()
    result = asyncio.run(
        _collector(_services(devnet, {1: down_a, 3: down_b})).collect(digest, devnet.snapshot, 2, 3)
    )
    assert result.quorum_met is False
    assert result.voting_power == 30
    assert set(result.failures) == {devnet.operator(1), devnet.operator(3)}
    assert result.timed_out is False


def test_unavailable_signer_is_retried_with_backoff(devnet, digest):
    flaky = _Flaky(devnet.local_service(), failures=2)
    collector = _collector(_services(devnet, {3: flaky, 4: None}), max_retries=3)
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))

    assert result.quorum_met is True
    assert 3 in result.signatures
    assert flaky.calls == 3
    assert result.failures == {devnet.operator(4): "no signing service configured"}


def test_retries_are_bounded(devnet, digest):
    down = _Down()
    asyncio.run(_collector(_services(devnet, {0: down}), max_retries=2).collect(digest, devnet.snapshot, 2, 3))
    assert down.calls <= 3


def test_rejection_is_not_retried(devnet, digest):
    rejecting = _Rejecting()
    collector = _collector(_services(devnet, {0: rejecting, 1: None}), max_retries=3)
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))
    assert rejecting.calls == 1
    assert result.quorum_met is False


def test_invalid_signature_is_dropped(devnet, digest):
    collector = _collector(_services(devnet, {3: _Garbage(), 4: None}))
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))
    assert result.quorum_met is False
    assert 3 not in result.signatures
    assert result.failures[devnet.operator(3)] == "invalid signature"


def test_deadline_bounds_collection(devnet, digest):
    slow_a, slow_b = _Slow(), _Slow()
    collector = _collector(_services(devnet, {3: slow_a, 4: slow_b}), per_signer_timeout_s=5.0, deadline_s=0.3)

    started = time.monotonic()
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))

    assert time.monotonic() - started < 2.0
    assert result.timed_out is True
    assert result.quorum_met is False
    assert result.voting_power == 30
    assert slow_a.cancelled and slow_b.cancelled


def test_per_signer_timeout_counts_as_failure(devnet, digest):
    collector = _collector(_services(devnet, {4: _Slow(), 3: None}), per_signer_timeout_s=0.1, deadline_s=5.0)
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))
    assert result.quorum_met is False
    assert devnet.operator(4) in result.failures
    assert result.timed_out is False


def test_resolver_callable(devnet, digest):
    local = devnet.local_service()
    collector = _collector(lambda operator_id: local)
    result = asyncio.run(collector.collect(digest, devnet.snapshot, 2, 3))
    assert result.quorum_met is True


def test_digest_must_be_32_bytes(devnet):
    with pytest.raises(ValueError):
        asyncio.run(_collector(_services(devnet, {})).collect(b"short", devnet.snapshot, 2, 3))
