"""
ledger.py – per-user gas-fee balance + commission transaction book
==================================================================

Redis schema
------------
settings:global                        HASH  commission_rate, minimum_gas_fee
ledger:balance:<user>                  STR   float balance (never < 0)
ledger:commission:<user>               LIST  JSON tx (append-only)
ledger:commission:positions:<user>     HASH  position_id → JSON tx (idempotency)
ledger:commission:failed:<user>        LIST  JSON failed deduction (audit)
ledger:tx_seq                          INT   transaction ids

The only writer of a balance besides top-ups is `conditional_debit`, which
re-reads the balance under WATCH and queues the debit, the transaction
append and the idempotency mark in one MULTI.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import redis

from shared.config import MINIMUM_GAS_FEE
from shared.constants import (
    KEY_BALANCE, KEY_COMMISSION_FAILED, KEY_COMMISSION_POS,
    KEY_COMMISSION_TX, KEY_SETTINGS, KEY_TX_SEQ,
)
from shared.errors import ConfigurationError, InsufficientBalanceError
from shared.logging import get_logger
from shared.redis_client import rds, transact
from shared.utils import money, now_utc

log = get_logger("commission.ledger")


@dataclass(frozen=True)
class PlatformConfig:
    """Global settings fetched once per evaluation and passed explicitly."""
    commission_rate: float          # percent of realised profit
    minimum_gas_fee: float = MINIMUM_GAS_FEE


@dataclass(frozen=True)
class CommissionTx:
    id: str
    user_id: str
    position_id: str
    profit: float
    commission: float
    commission_rate: float
    balance_before: float
    balance_after: float
    created_at: str


class BalanceLedger:
    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.rds = client if client is not None else rds

    # ───── global settings ────────────────────────────────────────────
    def load_config(self) -> PlatformConfig:
        raw = self.rds.hgetall(KEY_SETTINGS)
        rate = raw.get("commission_rate")
        if rate in (None, ""):
            raise ConfigurationError("commission rate is not configured")
        rate = float(rate)
        if not 0 < rate <= 100:
            raise ConfigurationError(f"commission rate {rate} outside (0, 100]")
        floor = raw.get("minimum_gas_fee")
        return PlatformConfig(
            commission_rate=rate,
            minimum_gas_fee=float(floor) if floor not in (None, "") else MINIMUM_GAS_FEE,
        )

    def set_commission_rate(self, rate: float) -> None:
        if not 0 < rate <= 100:
            raise ValueError(f"commission rate {rate} outside (0, 100]")
        self.rds.hset(KEY_SETTINGS, "commission_rate", rate)
        log.info("commission rate set to %.2f%%", rate)

    def set_minimum_gas_fee(self, amount: float) -> None:
        self.rds.hset(KEY_SETTINGS, "minimum_gas_fee", amount)

    # ───── balances ───────────────────────────────────────────────────
    def open_account(self, user_id: str, balance: float = 0.0) -> None:
        if balance < 0:
            raise ValueError("opening balance cannot be negative")
        self.rds.setnx(KEY_BALANCE.format(user_id), money(balance))

    def has_account(self, user_id: str) -> bool:
        return bool(self.rds.exists(KEY_BALANCE.format(user_id)))

    def balance(self, user_id: str) -> float:
        raw = self.rds.get(KEY_BALANCE.format(user_id))
        if raw is None:
            raise ConfigurationError(f"no gas-fee account for user {user_id}")
        return float(raw)

    def credit(self, user_id: str, amount: float) -> float:
        """Top-up.  Atomic server-side increment, safe against a racing debit."""
        if amount <= 0:
            raise ValueError("top-up amount must be positive")
        if not self.has_account(user_id):
            raise ConfigurationError(f"no gas-fee account for user {user_id}")
        new = float(self.rds.incrbyfloat(KEY_BALANCE.format(user_id), amount))
        log.info("top-up %.2f → balance %.2f", amount, new, extra={"user": user_id})
        return new

    # ───── commission book ────────────────────────────────────────────
    def find_tx(self, user_id: str, position_id: str) -> Optional[CommissionTx]:
        raw = self.rds.hget(KEY_COMMISSION_POS.format(user_id), position_id)
        return CommissionTx(**json.loads(raw)) if raw else None

    def conditional_debit(self, user_id: str, position_id: str, profit: float,
                          config: PlatformConfig) -> tuple[CommissionTx, bool]:
        """
        Debit `profit * rate` iff the balance covers it.

        Returns (tx, replayed).  A second call for the same position
        returns the first transaction untouched.  Raises
        InsufficientBalanceError without writing the balance.
        """
        bal_key = KEY_BALANCE.format(user_id)
        pos_key = KEY_COMMISSION_POS.format(user_id)
        commission = money(profit * config.commission_rate / 100)
        def _debit(pipe: Any) -> tuple[CommissionTx, bool]:
            prior = pipe.hget(pos_key, position_id)
            if prior:
                pipe.multi()
                return CommissionTx(**json.loads(prior)), True
            raw = pipe.get(bal_key)
            if raw is None:
                raise ConfigurationError(f"no gas-fee account for user {user_id}")
            current = float(raw)
            if current < commission:
                raise InsufficientBalanceError(commission, current, position_id)
            after = money(current - commission)
            tx = CommissionTx(
                id=str(pipe.incr(KEY_TX_SEQ)),       # only debits consume an id
                user_id=user_id,
                position_id=position_id,
                profit=profit,
                commission=commission,
                commission_rate=config.commission_rate,
                balance_before=current,
                balance_after=after,
                created_at=now_utc().isoformat(),
            )
            body = json.dumps(asdict(tx))
            pipe.multi()
            pipe.set(bal_key, after)
            pipe.rpush(KEY_COMMISSION_TX.format(user_id), body)
            pipe.hset(pos_key, position_id, body)
            return tx, False

        return transact(self.rds, _debit, bal_key, pos_key)

    def record_failure(self, user_id: str, position_id: str, profit: float,
                       required: float, available: float) -> None:
        self.rds.rpush(KEY_COMMISSION_FAILED.format(user_id), json.dumps({
            "position_id": position_id,
            "profit": profit,
            "required": required,
            "available": available,
            "created_at": now_utc().isoformat(),
        }))

    def transactions(self, user_id: str) -> List[CommissionTx]:
        return [CommissionTx(**json.loads(r))
                for r in self.rds.lrange(KEY_COMMISSION_TX.format(user_id), 0, -1)]

    def failures(self, user_id: str) -> List[Dict[str, Any]]:
        return [json.loads(r)
                for r in self.rds.lrange(KEY_COMMISSION_FAILED.format(user_id), 0, -1)]
