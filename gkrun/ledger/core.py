import json
import logging
from typing import Dict, List, Optional

from gkrun.common.hashutil import _json_default
from gkrun.db.pg import cx, execute, fetchall_dict, fetchone_dict
from gkrun.runs.model import Run

log = logging.getLogger(__name__)


# ==================
# 1) RUN STATE UPSERT
# ==================
_UPSERT_SQL = """
    INSERT INTO public.runs
        (id, run_name, directory, status, running, nprocs,
         completed_timesteps, percent_complete, sim_time, run_time,
         restart_id, response_id, results, components, updated_at)
    VALUES
        (%(id)s, %(run_name)s, %(directory)s, %(status)s, %(running)s, %(nprocs)s,
         %(completed_timesteps)s, %(percent_complete)s, %(sim_time)s, %(run_time)s,
         %(restart_id)s, %(response_id)s, %(results)s::jsonb, %(components)s::jsonb, NOW())
    ON CONFLICT (id) DO UPDATE SET
        run_name            = EXCLUDED.run_name,
        directory           = EXCLUDED.directory,
        status              = EXCLUDED.status,
        running             = EXCLUDED.running,
        nprocs              = EXCLUDED.nprocs,
        completed_timesteps = EXCLUDED.completed_timesteps,
        percent_complete    = EXCLUDED.percent_complete,
        sim_time            = EXCLUDED.sim_time,
        run_time            = EXCLUDED.run_time,
        restart_id          = EXCLUDED.restart_id,
        response_id         = EXCLUDED.response_id,
        results             = EXCLUDED.results,
        components          = EXCLUDED.components,
        updated_at          = NOW()
"""


def run_row(run: Run) -> Dict:
    """Column values for public.runs."""
    return {
        "id": run.id,
        "run_name": run.run_name,
        "directory": str(run.directory),
        "status": run.status.value,
        "running": bool(run.running),
        "nprocs": run.nprocs,
        "completed_timesteps": run.completed_timesteps,
        "percent_complete": run.percent_complete,
        "sim_time": run.time,
        "run_time": run.run_time,
        "restart_id": run.restart_id,
        "response_id": run.response_id,
        "results": json.dumps(run.results, default=_json_default),
        "components": json.dumps([c.to_dict() for c in run.component_runs], default=_json_default),
    }


def upsert_run(run: Run, *, dsn: Optional[str] = None) -> bool:
    """
    Mirror the run's state into public.runs.

    Returns False when the write failed. It never raises: the ledger is a
    mirror of the run records, a database outage must not stop processing.
    """
    try:
        with cx(dsn) as conn:
            execute(conn, _UPSERT_SQL, run_row(run))
        return True
    except Exception as e:
        log.warning("ledger: upsert of run %s failed: %s", run.id, e)
        return False


# ==============
# 2) RUN QUERIES
# ==============
def fetch_runs(*, status: Optional[str] = None, dsn: Optional[str] = None) -> List[Dict]:
    sql = """
        SELECT id, run_name, directory, status, running, nprocs,
               completed_timesteps, percent_complete, sim_time, run_time,
               restart_id, response_id, results, components, updated_at
        FROM public.runs
        WHERE (%(status)s::text IS NULL OR status = %(status)s::text)
        ORDER BY id
    """
    with cx(dsn) as conn:
        return fetchall_dict(conn, sql, {"status": status})


def fetch_run(run_id: int, *, dsn: Optional[str] = None) -> Optional[Dict]:
    with cx(dsn) as conn:
        return fetchone_dict(conn, "SELECT * FROM public.runs WHERE id = %s", (run_id,))


# =============
# 3) ERROR LOG
# =============
def log_error(run: Run, message: str, *, dsn: Optional[str] = None) -> None:
    """
    Append to public.errorlog. Like upsert_run this should NEVER raise;
    logging failures must not crash the runner.
    """
    try:
        with cx(dsn) as conn:
            execute(
                conn,
                """
                INSERT INTO public.errorlog (runid, run_name, status, message)
                VALUES (%(runid)s, %(run_name)s, %(status)s, %(message)s)
                """,
                {
                    "runid": run.id,
                    "run_name": run.run_name,
                    "status": run.status.value,
                    "message": message,
                },
            )
    except Exception as e:
        log.warning("ledger: error log for run %s not written: %s", run.id, e)
