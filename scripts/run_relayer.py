from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

# Allow running as a script without requiring `PYTHONPATH=.`.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import bittensor as bt

from enshrined.config import load_relayer_env
from enshrined.relayer.relayer import build_event_source, build_relayer
from enshrined.utils.env import _env_int


async def _run() -> None:
    cfg = load_relayer_env()
    relayer = build_relayer(cfg)
    source = build_event_source(cfg)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    bt.logging.info(
        f"Starting relayer {cfg.origin_chain_id} -> {cfg.dest_chain_id} "
        f"(origin={cfg.origin_rest_url}, dest={cfg.dest_api_url})"
    )
    await relayer.run_forever(
        source.fetch,
        poll_interval_s=cfg.poll_interval_s,
        stop=stop,
        start_height=max(0, _env_int("ENSHRINED_START_HEIGHT", 0)),
    )


def main() -> int:
    asyncio.run(_run())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
