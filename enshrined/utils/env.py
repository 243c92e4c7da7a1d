from __future__ import annotations

import os
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv

# Load .env once on import; real environment variables win.
load_dotenv()

T = TypeVar("T")

_TRUTHY = {"y", "yes", "t", "true", "on", "1"}


def _env_str(name: str, default: str = "") -> str:
    """Read a string env var, stripping whitespace."""
    return (os.getenv(name, default) or "").strip()


def _env_bool(name: str, default: bool = False) -> bool:
    return _env_str(name, str(default)).lower() in _TRUTHY


def _typed(name: str, default: T, cast: Callable[[str], T], test_default: Optional[T]) -> T:
    """
    Read and cast an env var.

    Under TESTING=true, `TEST_<NAME>` (or `test_default`) takes precedence so
    test runs never pick up production timeouts and limits from .env.
    """
    if _env_bool("TESTING", False):
        override = _env_str(f"TEST_{name}", "")
        if override:
            return cast(override)
        if test_default is not None:
            return test_default
    raw = _env_str(name, "")
    return cast(raw) if raw else default


def _env_int(name: str, default: int = 0, *, test_default: Optional[int] = None) -> int:
    return _typed(name, default, int, test_default)


def _env_float(name: str, default: float = 0.0, *, test_default: Optional[float] = None) -> float:
    return _typed(name, default, float, test_default)


def _env_url(name: str, default: str = "") -> str:
    """URL env var without trailing slashes ('' when unset)."""
    return _env_str(name, default).rstrip("/")
