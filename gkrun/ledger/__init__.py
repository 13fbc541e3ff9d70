"""
Ledger — mirror of run state in PostgreSQL (psycopg).

Currently implemented:
- upsert_run
- fetch_runs / fetch_run
- log_error
"""
from .core import (
    run_row,
    upsert_run,
    fetch_runs,
    fetch_run,
    log_error,
)
