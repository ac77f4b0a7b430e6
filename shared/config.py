"""
config.py – centralised env-var handling
=======================================

• Loads the first `.env` file it finds (cwd or /app) exactly **once**.
• Exposes `ENV` – a dict-like object that also supports attribute access.
• `env(key, default=None, cast=None)` helper for one-off lookups
  with automatic type-casting (int, float, bool).
• Process-wide tunables of the bot core (`MINIMUM_GAS_FEE`,
  `MONITOR_INTERVAL` …) are resolved here once.

The platform commission rate is deliberately *not* an env var: it lives
in the Redis settings hash and is read per evaluation
(see commission_service.ledger.BalanceLedger.load_config).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# ───── locate & load .env (first one wins) ────────────────────────────
for candidate in (Path.cwd() / ".env", Path("/app/.env")):
    if candidate.is_file():
        load_dotenv(dotenv_path=candidate, override=False)
        break

# ───── ENV proxy object ───────────────────────────────────────────────
class _Env(dict):
    """Attr-style access to `os.environ` while staying dict-compatible."""

    def __getattr__(self, item: str) -> str | None:  # noqa: D401
        return os.getenv(item)

    def __getitem__(self, key: str) -> str:
        return os.environ[key]

    def get(self, key: str, default: Any = None, cast: Optional[type] = None) -> Any:  # noqa: D401
        val = os.getenv(key)
        if val is None or val == "":
            return default
        if cast is None:
            return val
        try:
            if cast is bool:
                return str(val).lower() in ("1", "true", "yes", "y")
            return cast(val)
        except (ValueError, TypeError):
            return default


ENV: _Env = _Env(os.environ)  # public alias

def env(key: str, default: Any = None, cast: Optional[type] = None) -> Any:
    """Shortcut for `ENV.get(key, default, cast)`."""
    return ENV.get(key, default, cast)


# ───── core tunables ──────────────────────────────────────────────────
REDIS_URL         = env("REDIS_URL", "redis://redis:6379/0")
MINIMUM_GAS_FEE   = env("MINIMUM_GAS_FEE", 10.0, float)    # USDT floor
MONITOR_INTERVAL  = env("MONITOR_INTERVAL", 5.0, float)    # s between ceiling checks
PROVIDER_TIMEOUT  = env("PROVIDER_TIMEOUT", 3.0, float)    # s per adjustment provider
NEWS_LOOKBACK_HRS = env("NEWS_LOOKBACK_HOURS", 24, int)
BACKTEST_WINDOW   = env("BACKTEST_WINDOW", 20, int)        # recent results considered
TX_RETRIES        = env("TX_RETRIES", 25, int)             # optimistic-lock retries
API_PORT          = env("API_PORT", 8000, int)


__all__ = [
    "ENV", "env",
    "REDIS_URL", "MINIMUM_GAS_FEE", "MONITOR_INTERVAL", "PROVIDER_TIMEOUT",
    "NEWS_LOOKBACK_HRS", "BACKTEST_WINDOW", "TX_RETRIES", "API_PORT",
]
