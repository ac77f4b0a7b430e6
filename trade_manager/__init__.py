"""
trade_manager
=============

Per-user bot supervision:

• bot_store.py – one JSON bot document per user, WATCH/MULTI mutations.
• risk.py      – NORMAL ⇄ COOLDOWN state machine and adaptive daily quota.
• monitor.py   – per-position thread enforcing the safe profit ceiling.
• manager.py   – bot runners (signal → open → close bookkeeping) and a
  REST API for ops dashboards.

`manager` is not imported here: decision_service depends on the store
and the risk gate, and the runner depends on decision_service.
"""
