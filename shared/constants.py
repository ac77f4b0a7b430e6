"""
constants.py – single source of hard-coded names
"""

# safety margin on the profit ceiling: auto-close fires at 90 % of the
# profit whose commission would consume the whole gas-fee balance.
# Tunable risk parameter, not derived.
AUTO_CLOSE_MARGIN = 0.9

# learning patterns below this confidence are ignored by the engine
MIN_PATTERN_CONFIDENCE = 0.3

# Redis keys / templates
KEY_SETTINGS          = "settings:global"                 # HASH commission_rate, minimum_gas_fee
KEY_BALANCE           = "ledger:balance:{}"               # STR  float gas-fee balance
KEY_COMMISSION_TX     = "ledger:commission:{}"            # LIST JSON (append-only)
KEY_COMMISSION_POS    = "ledger:commission:positions:{}"  # HASH position_id → tx JSON
KEY_COMMISSION_FAILED = "ledger:commission:failed:{}"     # LIST JSON discrepancy audit
KEY_TX_SEQ            = "ledger:tx_seq"                   # INT  transaction ids

KEY_BOT_STATE         = "bot:state:{}"                    # STR  JSON bot document
KEY_BOT_INDEX         = "bot:index"                       # SET  user ids
KEY_BOT_DECISIONS     = "bot:decisions:{}"                # LIST decision ids oldest→newest

KEY_DECISION          = "decision:{}"                     # STR  JSON decision record
KEY_DECISION_SEQ      = "decision:seq"                    # INT  decision ids

KEY_NEWS              = "news:events:{}"                  # LIST JSON per symbol
KEY_NEWS_GLOBAL       = "news:events:_global"             # LIST JSON high-impact, any symbol
KEY_PATTERNS          = "learning:patterns:{}"            # HASH pattern_id → JSON
KEY_PATTERN_SEQ       = "learning:pattern_seq"

KEY_HEARTBEAT         = "heartbeat:{}"                    # service-specific
KEY_PAUSE_FLAG        = "flags:trading_paused"            # platform kill-switch
