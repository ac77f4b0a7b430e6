"""
trade_executor
==============

Bridges the bot core with the exchange.

* `ExchangeClient` – what the runner needs: open, live profit,
  open/closed state, close.
* `PaperExchange` – dry-run implementation keeping positions in memory;
  fills at the last price pushed with `set_price`.

The executor never decides anything: it is told to open on EXECUTE and
told to close when the safety ceiling (or any other exit) fires.
"""

from .exchange import ExchangeClient, PaperExchange, Position, TradeSpec

__all__ = ["ExchangeClient", "PaperExchange", "Position", "TradeSpec"]
