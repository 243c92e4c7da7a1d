from __future__ import annotations

import sys
from pathlib import Path

# Allow running as a script without requiring `PYTHONPATH=.`.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import bittensor as bt
import uvicorn

from enshrined.utils.env import _env_int, _env_str


def main() -> int:
    host = _env_str("ENSHRINED_API_HOST", "127.0.0.1") or "127.0.0.1"
    port = _env_int("ENSHRINED_API_PORT", 8090)
    bt.logging.info(f"Starting destination verifier on {host}:{port}")
    # uvicorn builds the single app (and its gateway) through the factory.
    uvicorn.run("enshrined.api.app:create_app", factory=True, host=host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
