"""
gkrun — status and analysis pipeline for gyrokinetic simulation runs

Modules
-------
- runs: Run / ComponentRun records, RunRegistry, JSON run records
- probe: artifact probe (log / scan log / netCDF store) and series cache
- status: status classifier (pure rules over probe facts)
- chain: restart chains, checkpoint and response file transfer
- metrics: derived results (growth rates, saturation, averaged fluxes) and component runs
- oe: Orchestrator (per-run pass, thread pool over runs)
- ledger: Postgres mirror of run state (psycopg)
- gui: status API (FastAPI)
- common: hashing, working-directory and tail helpers
"""

__all__ = [
    "runs",
    "probe",
    "status",
    "chain",
    "metrics",
    "oe",
    "ledger",
    "gui",
    "common",
]

__version__ = "0.1.0"
