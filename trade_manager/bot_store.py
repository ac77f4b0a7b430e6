"""
bot_store.py – one JSON bot document per user in Redis
======================================================

bot:state:<user>    STR  JSON BotState
bot:index           SET  user ids with an activated bot

Every mutation goes through `mutate()`, an optimistic WATCH/MULTI
read-modify-write, so two writers on the same bot serialise instead of
overwriting each other.
"""

from __future__ import annotations

import json
from typing import Any, Callable, List, Optional, TypeVar

import redis

from shared.constants import KEY_BOT_INDEX, KEY_BOT_STATE
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.models import BotState, BotStatus
from shared.redis_client import rds, transact
from shared.utils import now_utc

log = get_logger("trade_manager.bots")

R = TypeVar("R")


class BotStore:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.rds = client if client is not None else rds

    @staticmethod
    def key(user_id: str) -> str:
        return KEY_BOT_STATE.format(user_id)

    def create(self, user_id: str, state: Optional[BotState] = None) -> BotState:
        """Activate a bot; a second activation returns the existing document."""
        state = state or BotState(user_id=user_id)
        state.user_id = user_id
        state.created_at = state.created_at or now_utc().isoformat()
        state.last_active = state.created_at
        if self.rds.set(self.key(user_id), json.dumps(state.to_dict()), nx=True):
            self.rds.sadd(KEY_BOT_INDEX, user_id)
            log.info("bot activated", extra={"user": user_id})
            return state
        return self.get(user_id)

    def get(self, user_id: str) -> BotState:
        raw = self.rds.get(self.key(user_id))
        if raw is None:
            raise ConfigurationError(f"no bot for user {user_id}")
        return BotState.from_dict(json.loads(raw))

    def user_ids(self) -> List[str]:
        return sorted(self.rds.smembers(KEY_BOT_INDEX))

    # ───── read-modify-write ──────────────────────────────────────────
    def load(self, pipe: Any, user_id: str) -> BotState:
        """Read inside a WATCHed pipe (immediate mode)."""
        raw = pipe.get(self.key(user_id))
        if raw is None:
            raise ConfigurationError(f"no bot for user {user_id}")
        return BotState.from_dict(json.loads(raw))

    def queue_save(self, pipe: Any, state: BotState) -> None:
        """Queue the write on a pipe already in MULTI."""
        pipe.set(self.key(state.user_id), json.dumps(state.to_dict()))

    def mutate(self, user_id: str, fn: Callable[[BotState], R]) -> tuple[BotState, R]:
        """
        Apply `fn(state)` atomically.  `fn` edits the state in place and
        may return a value; the updated state and that value are returned.
        """
        def _tx(pipe: Any) -> tuple[BotState, R]:
            state = self.load(pipe, user_id)
            out = fn(state)
            pipe.multi()
            self.queue_save(pipe, state)
            return state, out

        return transact(self.rds, _tx, self.key(user_id))

    # ───── convenience writers ────────────────────────────────────────
    def set_status(self, user_id: str, status: BotStatus) -> BotState:
        def _set(s: BotState) -> None:
            s.status = BotStatus(status).value
            s.last_active = now_utc().isoformat()
        state, _ = self.mutate(user_id, _set)
        log.info("bot status → %s", state.status, extra={"user": user_id})
        return state

    def reset_daily_counters(self) -> int:
        """Calendar-day rollover hook for the external scheduler."""
        n = 0
        for uid in self.user_ids():
            def _reset(s: BotState) -> None:
                s.daily_trade_count = 0
            try:
                self.mutate(uid, _reset)
                n += 1
            except ConfigurationError:
                self.rds.srem(KEY_BOT_INDEX, uid)
        log.info("daily trade counters reset for %d bot(s)", n)
        return n
