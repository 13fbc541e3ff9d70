"""
OE (Orchestrator) — per-run processing pass

process_run(run):
  - load the persisted run record (unless forced)
  - leave Queueing runs alone; skip terminal runs whose artifacts are unchanged
  - refresh `running` from the recorded pid (psutil)
  - probe -> classify -> apply status and progress
  - Complete: wall time, final time, results, component runs
  - persist the record; mirror into the ledger when a DSN is configured

process_runs(runs) fans process_run out over a thread pool. Runs are
independent; the RunRegistry is the only shared state.
"""

from __future__ import annotations

import copy
import logging
import math
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from time import perf_counter
from typing import Iterable, List, Optional

import psutil

from gkrun import ledger
from gkrun.common.hashutil import artifact_fingerprint
from gkrun.common.paths import tail_lines, tail_text
from gkrun.config import AnalysisConfig
from gkrun.errors import GkrunError, MissingArtifactError, RestartChainError
from gkrun.metrics.aggregator import ResultAggregator
from gkrun.metrics.components import ComponentRunSplitter
from gkrun.probe.artifacts import FLOAT_RE, TIMER_TAIL, parse_number, probe, read_wall_time
from gkrun.probe.cache import UNKNOWN, TimeSeriesCache, cache_for
from gkrun.probe.reader import NetCDFReader, TimeSeriesReader
from gkrun.runs.model import Run, Status
from gkrun.runs.record import apply_record, delete_record, read_record, write_record
from gkrun.runs.registry import RunRegistry
from gkrun.status.classifier import classify, completed_timesteps, percent_complete

log = logging.getLogger(__name__)

TIME_TAIL = 4  # log lines searched for the current time when the store has none

# ---- Process-wide abort machinery -------------------------------------------
ABORT = threading.Event()


def request_abort(reason: str = "") -> None:
    """Set abort flag; workers finish their current run and start no new one."""
    ABORT.set()
    if reason:
        log.warning("[OE] ⚠ abort requested: %s", reason)


def install_signal_handlers() -> None:
    def _h(sig, _frame):
        request_abort(f"signal {sig}")
    try:
        signal.signal(signal.SIGINT, _h)
        signal.signal(signal.SIGTERM, _h)
    except ValueError:
        # not the main thread
        log.debug("[OE] signal handlers not installed")


# -------------------
# Artifact queries
# -------------------

def artifact_paths(run: Run):
    return [run.output_path, run.netcdf_path, run.scan_log_path]


def get_time(run: Run, cache: Optional[TimeSeriesCache] = None) -> Optional[float]:
    """
    Latest simulation time: the largest value of the 't' series, else the
    first number in the last few log lines. Sets and returns run.time.
    """
    if cache is not None and cache.store_exists():
        try:
            values = [v for v in cache.series("t", status=run.status).values() if v != UNKNOWN]
        except (GkrunError, OSError, ValueError) as e:
            log.debug("run %s: no time series (%s); reading the log", run.id, e)
            values = []
        if values:
            run.time = float(max(values))
            return run.time

    if not run.output_path.is_file():
        raise MissingArtifactError(f"Couldn't find outfile {run.output_path}")
    run.time = None
    m = FLOAT_RE.search("\n".join(tail_lines(run.output_path, TIME_TAIL)))
    if m:
        run.time = parse_number(m.group(0))
    return run.time


def get_run_time(run: Run) -> Optional[float]:
    """Wall time from the final timer line; None when it was never written."""
    if not run.output_path.is_file():
        run.run_time = None
        return None
    run.run_time = read_wall_time(tail_text(run.output_path, TIMER_TAIL))
    return run.run_time


def refresh_running(run: Run) -> bool:
    """Running flag from the recorded pid; without a pid the flag is kept."""
    if not run.pid:
        return run.running
    try:
        proc = psutil.Process(int(run.pid))
        run.running = proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        run.running = False
    except psutil.AccessDenied:
        run.running = psutil.pid_exists(int(run.pid))
    return run.running


def _update_progress(run: Run, cache: TimeSeriesCache) -> None:
    try:
        series = cache.series("t", status=run.status)
        if not series:
            raise ValueError("empty time axis")
        steps = completed_timesteps(len(series), run.nwrite)
        pct = percent_complete(steps, run.nstep)
        if pct is None:
            raise ValueError("nstep not set")
        run.completed_timesteps = steps
        run.percent_of_total_time = pct
        return
    except (GkrunError, OSError, ValueError) as e:
        log.debug("run %s: progress from time instead of steps (%s)", run.id, e)

    get_time(run, cache)
    try:
        run.percent_of_total_time = run.time / (run.delt * run.nstep) * 100.0
    except (TypeError, ZeroDivisionError):
        run.percent_of_total_time = 0.0


def _publish(registry: Optional[RunRegistry], run: Run) -> None:
    if registry is None:
        return
    try:
        registry.register(run)
    except RestartChainError as e:
        log.warning("[OE] ⚠ run %s kept out of the registry: %s", run.id, e)


def _working_copy(run: Run) -> Run:
    """Private copy to derive into; the registered object is replaced, never edited."""
    work = copy.copy(run)
    work.parameters = dict(run.parameters)
    work.results = copy.deepcopy(run.results)
    work.component_runs = list(run.component_runs)
    work.cache = None
    return work


def _persist(run: Run, fingerprint: str, config: AnalysisConfig) -> None:
    write_record(run, fingerprint)
    if config.database_url:
        ledger.upsert_run(run, dsn=config.database_url)
        if run.status is Status.FAILED:
            ledger.log_error(run, f"run {run.run_name} failed", dsn=config.database_url)


# -------------------
# Public OE functions
# -------------------

def process_run(
    run: Run,
    registry: Optional[RunRegistry] = None,
    reader: Optional[TimeSeriesReader] = None,
    config: Optional[AnalysisConfig] = None,
    force: bool = False,
) -> Run:
    """
    Bring `run` up to date with its directory. Safe to repeat: an unchanged
    terminal run comes back as recorded, anything else is re-derived from disk.

    The pass works on a copy and returns it; `run` itself is left untouched.
    The copy is published to `registry` once, fully derived, so readers
    never see a new status next to stale results.
    """
    config = config or AnalysisConfig.from_env()
    reader = reader or NetCDFReader()
    run = _working_copy(run)

    recorded_fingerprint = None
    if not force:
        record = read_record(run.directory)
        if record is not None:
            apply_record(run, record)
            recorded_fingerprint = record.get("fingerprint")

    if run.status is Status.QUEUEING:
        log.info("[OE] run %s is queueing; left as is", run.id)
        _publish(registry, run)
        return run

    fingerprint = artifact_fingerprint(artifact_paths(run))
    if run.status.is_terminal and recorded_fingerprint == fingerprint:
        log.debug("[OE] run %s unchanged since last pass", run.id)
        _publish(registry, run)
        return run

    refresh_running(run)
    cache = cache_for(run, reader)
    cache.invalidate()

    facts = probe(run, cache)
    result = classify(facts, run)
    run.status = result.status
    if result.completed_timesteps is not None:
        run.completed_timesteps = result.completed_timesteps
    if result.percent_complete is not None:
        run.percent_of_total_time = result.percent_complete
    if run.status.is_terminal:
        log.info("[OE] ▶ Run %s: %s", run.status.value, run.run_name)

    if run.status in (Status.NOT_STARTED, Status.FAILED):
        run.results = {}
        run.component_runs = []
        _persist(run, fingerprint, config)
        _publish(registry, run)
        return run

    if result.percent_complete is None:
        _update_progress(run, cache)
    if run.status is Status.INCOMPLETE:
        _persist(run, fingerprint, config)
        _publish(registry, run)
        return run

    get_run_time(run)
    get_time(run, cache)
    aggregator = ResultAggregator(config)
    aggregator.compute_results(run, cache)
    ComponentRunSplitter(aggregator).split(run, cache)

    _persist(run, fingerprint, config)
    _publish(registry, run)
    return run


def recheck(
    run: Run,
    registry: Optional[RunRegistry] = None,
    reader: Optional[TimeSeriesReader] = None,
    config: Optional[AnalysisConfig] = None,
) -> Run:
    """Forget everything derived for `run` and process it from scratch."""
    delete_record(run.directory)
    run = _working_copy(run)
    run.results = {}
    run.component_runs = []
    run.completed_timesteps = None
    run.percent_of_total_time = None
    run.time = None
    run.run_time = None
    if run.status is not Status.QUEUEING:
        run.status = Status.NOT_STARTED
    return process_run(run, registry, reader, config, force=True)


def process_runs(
    runs: Iterable[Run],
    registry: Optional[RunRegistry] = None,
    reader: Optional[TimeSeriesReader] = None,
    config: Optional[AnalysisConfig] = None,
    force: bool = False,
    workers: Optional[int] = None,
    keep_going: bool = False,
) -> List[Run]:
    """
    Process independent runs concurrently. Returns the runs that were
    processed, in input order.

    A failing run aborts the pass (runs not yet started are skipped and the
    error is re-raised) unless keep_going is set, in which case it is logged
    and the other runs continue.
    """
    config = config or AnalysisConfig.from_env()
    reader = reader or NetCDFReader()
    registry = registry if registry is not None else RunRegistry()
    runs = list(runs)
    workers = workers or config.workers

    try:
        registry.register_many([r for r in runs if r.id not in registry])
    except RestartChainError as e:
        log.warning("[OE] ⚠ restart links not registered: %s", e)

    ABORT.clear()
    log.info("[OE] ▶ processing %d runs on %d workers", len(runs), workers)
    t0 = perf_counter()

    def _one(run: Run) -> Optional[Run]:
        if ABORT.is_set():
            return None
        try:
            return process_run(run, registry, reader, config, force=force)
        except Exception as e:
            log.error("[OE] ✖ run %s failed: %s", run.id, e)
            if config.database_url:
                ledger.log_error(run, str(e), dsn=config.database_url)
            if not keep_going:
                request_abort(f"run {run.id} failed")
                raise
            return None

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_one, run) for run in runs]
        done = [f.result() for f in futures]

    processed = [r for r in done if r is not None]
    total_ms = int((perf_counter() - t0) * 1000)
    if ABORT.is_set():
        log.warning("[OE] ❌ aborted after %d/%d runs in %d ms", len(processed), len(runs), total_ms)
    else:
        log.info("[OE] ✅ %d/%d runs processed in %d ms", len(processed), len(runs), total_ms)
    return processed


# -------------------
# Reporting
# -------------------

def _fmt(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.3g}"
    return str(value)


def _tenths(fraction) -> str:
    value = float(fraction) * 10.0
    return str(int(value)) if math.isfinite(value) else "-1"


def summary_line(run: Run) -> str:
    """One line per run: id, name, status letter, wall minutes, nprocs, percent, metrics."""
    name = run.run_name
    if run.restart_id is not None:
        name += f" (res: {run.restart_id})"
    minutes = (run.run_time or 0.0) / 60.0
    pct = run.percent_complete
    pct_text = f"{pct:3.0f}" if pct is not None else "  ?"
    line = f"{run.id:2d} {name:<60s} {run.status.value[0]}:{minutes:2.1f}({run.nprocs or ''}) {pct_text}%"

    r = run.results
    if run.is_linear:
        line += " {:>5s} {:>9s} {:>9s}".format(
            _fmt(r.get("fastest_growing_mode")),
            _fmt(r.get("max_growth_rate")),
            _fmt(r.get("freq_of_max_growth_rate")),
        )
    elif run.is_nonlinear:
        saturated = r.get("saturated")
        line += f"       sat:{str(saturated)[0] if saturated is not None else '-'}"
        if r.get("hflux_tot_stav") is not None:
            line += f" hflux:{r['hflux_tot_stav']:1.2e}"
        if r.get("hflux_tot_stav_error") is not None:
            line += f"+/-{r['hflux_tot_stav_error']:1.2e}"
        mom = r.get("es_mom_flux_stav")
        if mom:
            line += f" momflux:{sum(mom.values()):1.2e}"
        if r.get("spectrum_check"):
            line += "  SC:" + ",".join(str(c) for c in r["spectrum_check"])
        if r.get("vspace_check"):
            line += "  VC:" + ",".join(_tenths(c) for c in r["vspace_check"])
    return line
