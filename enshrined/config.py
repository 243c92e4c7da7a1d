from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from enshrined.core.encoding import DEFAULT_MAX_BODY_BYTES
from enshrined.utils.env import _env_float, _env_int, _env_str, _env_url
from enshrined.verify.replay import ReplayMode


@dataclass(frozen=True)
class VerifierEnvConfig:
    chain_id: Optional[str]
    threshold_numerator: int
    threshold_denominator: int
    max_body_bytes: int
    replay_mode: ReplayMode
    initial_nonce: int
    # None -> in-memory nonce store (tests/dev only; not durable).
    state_path: Optional[str]
    retain_consumed: int
    # Pins the bech32 prefix of operator addresses; None accepts any.
    address_hrp: Optional[str]
    # Source-chain REST gateway: the only place validator sets are read from.
    origin_rest_url: Optional[str] = None


@dataclass(frozen=True)
class RelayerEnvConfig:
    origin_chain_id: str
    dest_chain_id: str
    origin_rest_url: str
    dest_api_url: str
    # operator bech32 -> signing daemon base URL
    signer_urls: Dict[str, str] = field(default_factory=dict)
    default_signer_url: Optional[str] = None
    threshold_numerator: int = 2
    threshold_denominator: int = 3
    signer_timeout_s: float = 5.0
    collection_deadline_s: float = 30.0
    signer_max_retries: int = 3
    signer_backoff_s: float = 0.5
    max_attempts: int = 3
    retry_interval_s: float = 10.0
    poll_interval_s: float = 5.0
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES


def _die(msg: str) -> None:
    raise SystemExit(f"[enshrined] {msg}")


def parse_threshold(raw: str) -> Tuple[int, int]:
    """'2/3' -> (2, 3). Integers only; the quorum rule never touches floats."""
    try:
        num_s, den_s = raw.split("/", 1)
        num, den = int(num_s), int(den_s)
    except ValueError:
        _die(f"Invalid threshold {raw!r} (expected e.g. '2/3').")
    if den <= 0 or not 0 < num <= den:
        _die(f"Invalid threshold {raw!r}: need 0 < numerator <= denominator.")
    return num, den


def _parse_signers(raw: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in (x.strip() for x in raw.split(",")):
        if not item:
            continue
        operator, sep, url = item.partition("=")
        operator, url = operator.strip(), url.strip().rstrip("/")
        if not sep or not operator or not url:
            _die(f"Invalid ENSHRINED_SIGNERS entry {item!r} (expected <operator>=<url>).")
        if not url.startswith("http"):
            _die(f"Signer URL for {operator} must be http(s). Got: {url!r}")
        out[operator] = url
    return out


def load_verifier_env() -> VerifierEnvConfig:
    """Destination-side settings from env/.env, validated strictly."""
    num, den = parse_threshold(_env_str("ENSHRINED_THRESHOLD", "2/3") or "2/3")

    mode_raw = (_env_str("ENSHRINED_REPLAY_MODE", "strict") or "strict").lower()
    if mode_raw not in ("strict", "lenient"):
        _die(f"Invalid ENSHRINED_REPLAY_MODE={mode_raw!r} (expected 'strict' or 'lenient').")
    replay_mode: ReplayMode = "lenient" if mode_raw == "lenient" else "strict"

    max_body_bytes = _env_int("ENSHRINED_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES)
    if max_body_bytes <= 0:
        _die("ENSHRINED_MAX_BODY_BYTES must be positive.")

    initial_nonce = _env_int("ENSHRINED_INITIAL_NONCE", 1)
    if initial_nonce < 0:
        _die("ENSHRINED_INITIAL_NONCE must be >= 0.")

    origin_rest = _env_url("ENSHRINED_ORIGIN_REST_URL")
    if origin_rest and not origin_rest.startswith("http"):
        _die(f"ENSHRINED_ORIGIN_REST_URL must be http(s). Got: {origin_rest!r}")

    return VerifierEnvConfig(
        chain_id=_env_str("ENSHRINED_CHAIN_ID", "") or None,
        threshold_numerator=num,
        threshold_denominator=den,
        max_body_bytes=max_body_bytes,
        replay_mode=replay_mode,
        initial_nonce=initial_nonce,
        state_path=_env_str("ENSHRINED_STATE_PATH", "") or None,
        retain_consumed=max(0, _env_int("ENSHRINED_RETAIN_CONSUMED", 1024)),
        address_hrp=_env_str("ENSHRINED_ADDRESS_HRP", "") or None,
        origin_rest_url=origin_rest or None,
    )


def load_relayer_env() -> RelayerEnvConfig:
    """Relayer settings from env/.env, validated strictly."""
    origin = _env_str("ENSHRINED_ORIGIN_CHAIN_ID", "")
    dest = _env_str("ENSHRINED_DEST_CHAIN_ID", "")
    rest = _env_url("ENSHRINED_ORIGIN_REST_URL")
    api = _env_url("ENSHRINED_DEST_API_URL")
    for name, value in (
        ("ENSHRINED_ORIGIN_CHAIN_ID", origin),
        ("ENSHRINED_DEST_CHAIN_ID", dest),
        ("ENSHRINED_ORIGIN_REST_URL", rest),
        ("ENSHRINED_DEST_API_URL", api),
    ):
        if not value:
            _die(f"Missing required env var: {name}")
    for name, url in (("ENSHRINED_ORIGIN_REST_URL", rest), ("ENSHRINED_DEST_API_URL", api)):
        if not url.startswith("http"):
            _die(f"{name} must be http(s). Got: {url!r}")

    signer_urls = _parse_signers(_env_str("ENSHRINED_SIGNERS", ""))
    default_signer = _env_url("ENSHRINED_DEFAULT_SIGNER_URL") or None
    if default_signer and not default_signer.startswith("http"):
        _die(f"ENSHRINED_DEFAULT_SIGNER_URL must be http(s). Got: {default_signer!r}")
    if not signer_urls and not default_signer:
        _die("Configure ENSHRINED_SIGNERS and/or ENSHRINED_DEFAULT_SIGNER_URL.")

    num, den = parse_threshold(_env_str("ENSHRINED_THRESHOLD", "2/3") or "2/3")

    return RelayerEnvConfig(
        origin_chain_id=origin,
        dest_chain_id=dest,
        origin_rest_url=rest,
        dest_api_url=api,
        signer_urls=signer_urls,
        default_signer_url=default_signer,
        threshold_numerator=num,
        threshold_denominator=den,
        signer_timeout_s=max(0.1, _env_float("ENSHRINED_SIGNER_TIMEOUT_S", 5.0)),
        collection_deadline_s=max(1.0, _env_float("ENSHRINED_COLLECTION_DEADLINE_S", 30.0)),
        signer_max_retries=max(0, min(10, _env_int("ENSHRINED_SIGNER_MAX_RETRIES", 3))),
        signer_backoff_s=max(0.0, _env_float("ENSHRINED_SIGNER_BACKOFF_S", 0.5)),
        max_attempts=max(1, _env_int("ENSHRINED_MAX_ATTEMPTS", 3)),
        retry_interval_s=max(0.0, _env_float("ENSHRINED_RETRY_INTERVAL_S", 10.0)),
        poll_interval_s=max(0.1, _env_float("ENSHRINED_POLL_INTERVAL_S", 5.0)),
        max_body_bytes=_env_int("ENSHRINED_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES),
    )
