"""
decision_service
================

Turns each trading signal into an EXECUTE / SKIP decision and keeps the
audit trail of why.

Data-flow
---------
1. Validate the signal and ask the risk gate (trade_manager.risk).

2. Gather optional context in parallel:
     • news sentiment for the symbol
     • recent win rate of the bot's own closed decisions
     • learned win / loss patterns matching the market conditions

3. Score:  total = clamp01(technical + news + backtest + learning),
   EXECUTE iff total ≥ ai_config.confidence_threshold.

4. Persist the decision record and the bot bookkeeping together; the
   execution result is written back on close and feeds steps 2-3.

Redis schema
------------
decision:<id>              STR   JSON decision record
bot:decisions:<user>       LIST  decision ids (oldest → newest)
learning:patterns:<user>   HASH  pattern_id → JSON pattern
news:events:<SYM>          LIST  JSON headline with sentiment
"""
