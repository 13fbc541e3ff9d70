# gkrun/status/classifier.py
"""
StatusClassifier — decide a run's status from ProbeFacts.

Pure: the same facts and configuration always give the same Classification.
Rules are priority ordered, first match wins:

  running:
    log has > 4 tail lines and shows time advancing   -> Incomplete
    otherwise                                          -> NotStarted
  not running:
    log missing / <= 4 tail lines                      -> Failed
    linear and "omega converged"                       -> Complete
    scan configured and "scan is complete"             -> Complete
    nonlinear, or no/negative omega tolerance, or
    exit_when_converged disabled:
        no store / empty time axis                     -> Failed
        percent >= 100                                 -> Complete
        5 < percent < 100 and final timer line written -> Complete
        otherwise                                      -> Failed
    anything else                                      -> Failed

Queueing is never produced here; the orchestrator leaves queued runs alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from gkrun.probe.artifacts import ProbeFacts
from gkrun.runs.model import NonlinearMode, Run, Status

MIN_LOG_LINES = 4              # a log needs more than this many tail lines
TIME_BUDGET_MIN_PERCENT = 5.0  # progress needed to accept a timed-out run


@dataclass(frozen=True)
class Classification:
    status: Status
    completed_timesteps: Optional[int] = None
    percent_complete: Optional[float] = None


def completed_timesteps(series_length: int, nwrite: Optional[int] = None) -> int:
    """Last recorded step: (series_length - 1) * write interval (default 1)."""
    return (int(series_length) - 1) * (int(nwrite) if nwrite else 1)


def percent_complete(steps: int, nstep: Optional[int]) -> Optional[float]:
    if not nstep:
        return None
    return float(steps) / float(nstep) * 100.0


def _checks_timesteps(run: Run) -> bool:
    return (
        run.nonlinear_mode is NonlinearMode.ON
        or run.omega_tolerance is None
        or run.omega_tolerance < 0.0
        or run.exit_when_converged is False
    )


def classify(facts: ProbeFacts, run: Run) -> Classification:
    log_ok = facts.log_exists and facts.log_tail_lines > MIN_LOG_LINES

    if facts.running:
        if log_ok and facts.time_advanced:
            return Classification(Status.INCOMPLETE)
        return Classification(Status.NOT_STARTED)

    if not log_ok:
        return Classification(Status.FAILED)

    if run.nonlinear_mode is NonlinearMode.OFF and facts.omega_converged:
        return Classification(Status.COMPLETE)

    if run.has_scan and facts.scan_complete:
        return Classification(Status.COMPLETE)

    if not _checks_timesteps(run):
        return Classification(Status.FAILED)

    if not facts.store_exists or not facts.time_axis_length:
        return Classification(Status.FAILED)

    length = facts.time_series_length if facts.time_series_length is not None else facts.time_axis_length
    steps = completed_timesteps(length, run.nwrite)
    percent = percent_complete(steps, run.nstep)

    if percent is None:
        status = Status.FAILED
    elif percent >= 100.0:
        status = Status.COMPLETE
    elif TIME_BUDGET_MIN_PERCENT < percent and facts.wall_timer_reported:
        # ran out of wall time after real progress and exited cleanly
        status = Status.COMPLETE
    else:
        status = Status.FAILED
    return Classification(status, completed_timesteps=steps, percent_complete=percent)
