"""
shared – tiny helpers imported by every service
-----------------------------------------------
Modules
-------
config.py         → loads `.env` once per process, core tunables
logging.py        → consistent JSON/stdout logger
constants.py      → Redis key names, safety margin, etc.
redis_client.py   → singleton Redis + heartbeat / kill-switch / transact
models.py         → bot state, signal and decision-record documents
errors.py         → exception taxonomy (configuration, balance, ordering)
utils.py          → time + money one-liners that don’t belong elsewhere
"""
