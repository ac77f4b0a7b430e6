"""
logging.py – JSON/std-out logger for every service

One JSON object per line.  Callers attach the entity a line is about via
`extra={"user": ..., "position": ..., "decision": ...}`; those keys are
lifted into the object so a single user's trail can be grepped.
"""

from __future__ import annotations
import json, logging, os, sys
from datetime import datetime, timezone
from typing import Any, Dict

# root config (no 'stream=' dup error)
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=_log_level, handlers=[])

# optional context fields callers pass via `extra={...}`
_CONTEXT_FIELDS = ("user", "position", "decision", "symbol")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:          # noqa: D401
        msg: Dict[str, Any] = {
            "ts":  datetime.now(tz=timezone.utc).isoformat(timespec="seconds"),
            "lvl": record.levelname,
            "src": record.name,
            "msg": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            val = getattr(record, field, None)
            if val is not None:
                msg[field] = val
        if record.threadName != "MainThread":     # position monitors, provider pool
            msg["thread"] = record.threadName
        if record.exc_info:
            msg["exc"] = self.formatException(record.exc_info)
        return json.dumps(msg, ensure_ascii=False, default=str)


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:                       # only add once / logger
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(JsonFormatter())
        logger.addHandler(h)
        logger.setLevel(_log_level)
        logger.propagate = False
    return logger
