"""
redis_client.py – singleton Redis connection + helpers
======================================================

• 100 % lazy: first call triggers connect; retries until Redis is up.
• `heartbeat(service)` once per loop; trade_manager exposes these keys.
• `trading_paused()` lets the risk gate honour the platform kill-switch.
• `transact(...)` runs an optimistic WATCH/MULTI read-modify-write with a
  bounded retry count – used by every balance / bot-state mutation.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional, TypeVar

import redis
from redis.exceptions import WatchError

from .config import REDIS_URL, TX_RETRIES
from .constants import KEY_HEARTBEAT, KEY_PAUSE_FLAG
from .logging import get_logger

log = get_logger("shared.redis")

T = TypeVar("T")

# ───── LAZY SINGLETON ─────────────────────────────────────────────────
class _LazyRedis:
    """Proxy object that connects on first attribute access (auto-retry)."""
    _client: Optional[redis.Redis] = None

    def __getattr__(self, name: str) -> Callable[..., Any]:  # noqa: D401
        if self._client is None:
            self._connect()
        return getattr(self._client, name)

    def _connect(self) -> None:
        while True:
            try:
                self._client = redis.Redis.from_url(
                    REDIS_URL,
                    decode_responses=True,
                    socket_timeout=2,
                )
                self._client.ping()
                log.info("Connected to Redis at %s", REDIS_URL)
                break
            except redis.ConnectionError as exc:
                log.warning("Redis unavailable – retrying in 2 s (%s)", exc)
                time.sleep(2)

# Exposed singleton used by all services
rds: redis.Redis = _LazyRedis()  # type: ignore[assignment]

# ───── HELPER FUNCTIONS ───────────────────────────────────────────────
def heartbeat(service: str, client: Optional[redis.Redis] = None) -> None:
    """Store current epoch-seconds in `heartbeat:<service>`."""
    try:
        (client or rds).set(KEY_HEARTBEAT.format(service), time.time())
    except redis.RedisError as exc:
        log.error("heartbeat failed – %s", exc)

def trading_paused(client: Optional[redis.Redis] = None) -> bool:
    """Return True if the platform-wide pause flag is set."""
    try:
        return (client or rds).get(KEY_PAUSE_FLAG) == "1"
    except redis.RedisError:
        # On Redis failure, default to *paused* for safety.
        return True

def set_paused(flag: bool, reason: str = "", client: Optional[redis.Redis] = None) -> None:
    (client or rds).set(KEY_PAUSE_FLAG, "1" if flag else "0")
    if flag:
        log.error("TRADING PAUSED – %s", reason)
    else:
        log.info("trading resumed manually")

def transact(client: redis.Redis, fn: Callable[[Any], T], *watches: str,
             retries: int = TX_RETRIES) -> T:
    """
    Run `fn(pipe)` under WATCH on `watches`, retrying on conflict.

    `fn` reads through the pipe (immediate mode), calls `pipe.multi()`
    and queues its writes; its return value is handed back once EXEC
    succeeds.  Raising inside `fn` aborts without writing anything.
    """
    for _ in range(max(1, retries)):
        with client.pipeline() as pipe:
            try:
                pipe.watch(*watches)
                result = fn(pipe)
                pipe.execute()
                return result
            except WatchError:
                continue
    raise RuntimeError(f"write conflict on {', '.join(watches)} – gave up after {retries} tries")
