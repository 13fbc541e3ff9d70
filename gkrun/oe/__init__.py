"""
OE (Orchestrator) — keeps run records in step with their directories.

Responsibilities:
- Per run: probe artifacts, classify status, derive progress.
- Complete runs: wall time, results, component runs.
- Persistence: run record next to the artifacts; optional ledger mirror.
- Batch: independent runs on a thread pool; abort flag stops the pass.
"""

from .core import (
    ABORT,
    request_abort,
    install_signal_handlers,
    get_time,
    get_run_time,
    refresh_running,
    process_run,
    process_runs,
    recheck,
    summary_line,
)
