import threading

import pytest

from enshrined.core.encoding import message_digest
from enshrined.core.errors import (
    InvalidSignature,
    MalformedEncoding,
    OutOfOrder,
    QuorumNotMet,
    ReplayRejected,
    UnknownSnapshot,
)
from enshrined.core.models import ValsetSnapshot
from enshrined.verify.gateway import DeliveryGateway
from enshrined.verify.replay import JsonFileNonceStore, ReplayGuard
from enshrined.verify.snapshots import SnapshotRegistry


def _gateway(devnet, **kwargs) -> DeliveryGateway:
    registry = SnapshotRegistry()
    registry.publish(devnet.snapshot)
    return DeliveryGateway(registry, chain_id="dstchain", **kwargs)


def test_accepts_once_then_rejects_replay(devnet, message, digest):
    delivered = []
    gw = _gateway(devnet, on_deliver=delivered.append)
    proof = devnet.proof(digest, [0, 1, 2, 3])

    res = gw.submit(message, proof)
    assert res.accepted is True
    assert res.status == "accepted"
    assert res.route == "orgchain|dstchain|demo"
    assert res.voting_power_achieved == 40
    assert res.released == [1]
    assert delivered == [message]

    with pytest.raises(ReplayRejected):
        gw.submit(message, proof)
    assert gw.next_nonce(message.route) == 2


def test_failed_verification_does_not_consume_nonce(devnet, message, digest):
    gw = _gateway(devnet)
    with pytest.raises(QuorumNotMet):
        gw.submit(message, devnet.proof(digest, [0, 1, 2]))
    assert gw.next_nonce(message.route) == 1

    assert gw.submit(message, devnet.proof(digest, [0, 1, 2, 4])).accepted is True


def test_proof_is_bound_to_message(devnet, make_msg, digest):
    gw = _gateway(devnet)
    other = make_msg(body=b"goodbye")
    with pytest.raises(InvalidSignature):
        gw.submit(other, devnet.proof(digest, [0, 1, 2, 3]))


def test_unknown_snapshot(devnet, make_msg):
    gw = _gateway(devnet)
    msg = make_msg(valset_id=42)
    with pytest.raises(UnknownSnapshot):
        gw.submit(msg, devnet.proof(message_digest(msg), [0, 1, 2, 3]))


def test_wrong_destination_chain(devnet, make_msg):
    gw = _gateway(devnet)
    msg = make_msg(dest_id="elsewhere")
    with pytest.raises(MalformedEncoding):
        gw.submit(msg, devnet.proof(message_digest(msg), [0, 1, 2, 3]))


def test_oversized_body_is_rejected_before_verification(devnet, make_msg):
    gw = _gateway(devnet, max_body_bytes=4)
    msg = make_msg(body=b"hello")
    with pytest.raises(MalformedEncoding):
        gw.submit(msg, devnet.proof(message_digest(msg), [0, 1, 2, 3]))


def test_strict_gateway_rejects_gap(devnet, make_msg):
    gw = _gateway(devnet)
    msg = make_msg(nonce=2)
    with pytest.raises(OutOfOrder):
        gw.submit(msg, devnet.proof(message_digest(msg), [0, 1, 2, 3]))


def test_lenient_gateway_delivers_in_nonce_order(devnet, make_msg):
    delivered = []
    gw = _gateway(devnet, guard=ReplayGuard(mode="lenient"), on_deliver=delivered.append)
    m1, m2, m3 = (make_msg(nonce=n) for n in (1, 2, 3))

    r3 = gw.submit(m3, devnet.proof(message_digest(m3), [0, 1, 2, 3]))
    assert r3.accepted is False
    assert r3.status == "buffered"
    r2 = gw.submit(m2, devnet.proof(message_digest(m2), [1, 2, 3, 4]))
    assert r2.status == "buffered"
    assert delivered == []

    r1 = gw.submit(m1, devnet.proof(message_digest(m1), [0, 1, 2, 3, 4]))
    assert r1.accepted is True
    assert r1.released == [1, 2, 3]
    assert [m.nonce for m in delivered] == [1, 2, 3]


def _flaky_handler(delivered, fail_on):
    failures = set(fail_on)

    def handler(msg):
        if msg.nonce in failures:
            failures.discard(msg.nonce)
            raise RuntimeError(f"recipient module unavailable for nonce {msg.nonce}")
        delivered.append(msg)

    return handler


def test_failing_handler_leaves_nonce_unconsumed(devnet, message, digest):
    delivered = []
    gw = _gateway(devnet, on_deliver=_flaky_handler(delivered, [1]))
    proof = devnet.proof(digest, [0, 1, 2, 3])

    with pytest.raises(RuntimeError):
        gw.submit(message, proof)
    assert gw.next_nonce(message.route) == 1
    assert delivered == []

    res = gw.submit(message, proof)
    assert res.accepted is True
    assert res.released == [1]
    assert delivered == [message]


def test_lenient_failing_handler_keeps_buffered_message(devnet, make_msg):
    delivered = []
    gw = _gateway(devnet, guard=ReplayGuard(mode="lenient"), on_deliver=_flaky_handler(delivered, [2]))
    m1, m2, m3 = (make_msg(nonce=n) for n in (1, 2, 3))

    assert gw.submit(m2, devnet.proof(message_digest(m2), [0, 1, 2, 3])).status == "buffered"
    r1 = gw.submit(m1, devnet.proof(message_digest(m1), [0, 1, 2, 3]))
    assert r1.released == [1]
    assert [m.nonce for m in delivered] == [1]
    state = gw.guard.state(m1.route)
    assert state.next_expected_nonce == 2
    assert state.pending == {2}

    r3 = gw.submit(m3, devnet.proof(message_digest(m3), [0, 1, 2, 3]))
    assert r3.released == [2, 3]
    assert [m.nonce for m in delivered] == [1, 2, 3]
    assert gw.next_nonce(m1.route) == 4


def test_retry_buffered_hands_over_waiting_messages(devnet, make_msg):
    delivered = []
    gw = _gateway(devnet, guard=ReplayGuard(mode="lenient"), on_deliver=_flaky_handler(delivered, [2]))
    m1, m2 = make_msg(nonce=1), make_msg(nonce=2)

    gw.submit(m2, devnet.proof(message_digest(m2), [0, 1, 2, 3]))
    gw.submit(m1, devnet.proof(message_digest(m1), [0, 1, 2, 3]))
    assert gw.next_nonce(m1.route) == 2

    assert gw.retry_buffered(m1.route) == [2]
    assert gw.retry_buffered(m1.route) == []
    assert [m.nonce for m in delivered] == [1, 2]
    assert gw.next_nonce(m1.route) == 3


def test_lenient_restart_drops_buffered_nonces(devnet, make_msg, tmp_path):
    path = tmp_path / "nonces.json"
    m1, m3 = make_msg(nonce=1), make_msg(nonce=3)

    gw = _gateway(devnet, guard=ReplayGuard(JsonFileNonceStore(path), mode="lenient"))
    gw.submit(m1, devnet.proof(message_digest(m1), [0, 1, 2, 3]))
    assert gw.submit(m3, devnet.proof(message_digest(m3), [0, 1, 2, 3])).status == "buffered"

    restarted = _gateway(devnet, guard=ReplayGuard(JsonFileNonceStore(path), mode="lenient"))
    state = restarted.guard.state(m3.route)
    assert state.next_expected_nonce == 2
    assert state.pending == set()
    # The buffered message was lost with the process, so it may be delivered again.
    assert restarted.submit(m3, devnet.proof(message_digest(m3), [0, 1, 2, 3])).status == "buffered"


def test_concurrent_duplicate_submissions(devnet, message, digest):
    gw = _gateway(devnet)
    proof = devnet.proof(digest, [0, 1, 2, 3])
    barrier = threading.Barrier(6)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            gw.submit(message, proof)
            result = "accepted"
        except ReplayRejected:
            result = "replay"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["accepted"] + ["replay"] * 5


def test_snapshot_publication_checks(devnet):
    registry = SnapshotRegistry()
    registry.publish(devnet.snapshot)
    assert registry.publish(devnet.snapshot) is devnet.snapshot
    assert registry.ids() == [1]

    conflicting = ValsetSnapshot(
        id=1,
        commitment_hash=b"\x00" * 32,
        members=devnet.snapshot.members,
    )
    with pytest.raises(MalformedEncoding):
        registry.publish(conflicting)

    with pytest.raises(UnknownSnapshot):
        registry.get(2)


def test_snapshot_loader_fallback(devnet):
    calls = []

    def loader(snapshot_id):
        calls.append(snapshot_id)
        return devnet.snapshot if snapshot_id == 1 else None

    registry = SnapshotRegistry(loader=loader)
    assert registry.get(1) is devnet.snapshot
    assert registry.get(1) is devnet.snapshot
    assert calls == [1]
    with pytest.raises(UnknownSnapshot):
        registry.get(7)


def _verifier_cfg(tmp_path, **overrides):
    from enshrined.config import VerifierEnvConfig

    data = dict(
        chain_id="dstchain",
        threshold_numerator=3,
        threshold_denominator=4,
        max_body_bytes=1024,
        replay_mode="lenient",
        initial_nonce=0,
        state_path=str(tmp_path / "nonces.json"),
        retain_consumed=16,
        address_hrp="orgvaloper",
        origin_rest_url="http://rest:1317",
    )
    data.update(overrides)
    return VerifierEnvConfig(**data)


def test_build_gateway_from_config(tmp_path, monkeypatch, devnet):
    import enshrined.chain.valsets as valsets_mod
    from enshrined.verify.gateway import build_gateway

    fetched = []

    def fake_fetch(self, snapshot_id):
        fetched.append((self.rest_url, snapshot_id))
        return devnet.fetch(snapshot_id)

    monkeypatch.setattr(valsets_mod.HttpSnapshotSource, "fetch", fake_fetch)

    gw = build_gateway(_verifier_cfg(tmp_path))
    assert gw.chain_id == "dstchain"
    assert gw.guard.mode == "lenient"
    assert isinstance(gw.guard.store, JsonFileNonceStore)
    assert gw.next_nonce("orgchain|dstchain|demo") == 0
    assert gw.encoder.max_body_bytes == 1024
    assert gw.snapshots.get(1) is devnet.snapshot
    assert fetched == [("http://rest:1317", 1)]


def test_build_gateway_without_source_chain_has_no_snapshots(tmp_path, devnet):
    from enshrined.verify.gateway import build_gateway

    gw = build_gateway(_verifier_cfg(tmp_path, origin_rest_url=None, state_path=None))
    with pytest.raises(UnknownSnapshot):
        gw.snapshots.get(1)


def test_pinned_prefix_rejects_foreign_snapshot(tmp_path, monkeypatch, devnet):
    import enshrined.chain.valsets as valsets_mod
    from enshrined.verify.gateway import build_gateway

    monkeypatch.setattr(valsets_mod.HttpSnapshotSource, "fetch", lambda self, snapshot_id: devnet.fetch(snapshot_id))
    gw = build_gateway(_verifier_cfg(tmp_path, address_hrp="cosmos"))
    with pytest.raises(MalformedEncoding):
        gw.snapshots.get(1)
