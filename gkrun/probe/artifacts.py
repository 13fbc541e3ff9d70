# gkrun/probe/artifacts.py
"""
ArtifactProbe — collect the filesystem facts the status classifier needs.

Reads, for one run directory:
  - existence and bounded tails of <run_name>.out and <run_name>.par_scan
  - existence of <run_name>.out.nc and the length of its time axis
  - whether the final timer line ("total from timer is") was written

Markers are matched case-insensitively and only inside the tail windows;
a missing marker is a fact (False), never an error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from gkrun.common.paths import tail_lines, tail_text, working_directory
from gkrun.errors import GkrunError
from gkrun.probe.cache import TimeSeriesCache

# Tail window sizes (lines)
SHORT_TAIL = 5
MARKER_TAIL = 200
TIMER_TAIL = 300

TIME_ADVANCED_RE = re.compile(r"t\s*=", re.IGNORECASE)
OMEGA_CONVERGED_RE = re.compile(r"omega\s+converged", re.IGNORECASE)
SCAN_COMPLETE_RE = re.compile(r"scan\s+is\s+complete", re.IGNORECASE)
WALL_TIMER_RE = re.compile(r"total\s+from\s+timer\s+is", re.IGNORECASE)
WALL_TIME_RE = re.compile(
    r"total\s+from\s+timer\s+is:?\s*(?P<number>[-+]?(?:\d+\.?\d*|\.\d+)(?:[eEdD][-+]?\d+)?)",
    re.IGNORECASE,
)
FLOAT_RE = re.compile(r"[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eEdD][-+]?\d+)?")


@dataclass(frozen=True)
class ProbeFacts:
    running: bool
    log_exists: bool
    log_tail_lines: int            # lines present in the SHORT_TAIL window
    time_advanced: bool
    omega_converged: bool
    wall_timer_reported: bool
    scan_log_exists: bool
    scan_complete: bool
    store_exists: bool
    time_axis_length: Optional[int] = None    # length of dimension 't'
    time_series_length: Optional[int] = None  # size of the extracted 't' series


def parse_number(text: str) -> float:
    """Fortran-style floats allowed: 1.5D+02 -> 150.0."""
    return float(text.replace("D", "E").replace("d", "e"))


def read_wall_time(log_text: str) -> Optional[float]:
    m = WALL_TIME_RE.search(log_text)
    if not m:
        return None
    return parse_number(m.group("number"))


def probe(run, cache: TimeSeriesCache) -> ProbeFacts:
    """
    Gather ProbeFacts for `run` inside its directory.

    The series for 't' is read through `cache` with the run's current status,
    so a store that is still being written is always re-read.
    """
    with working_directory(run.directory):
        out_name = f"{run.run_name}.out"
        log_exists = run.output_path.is_file()
        short = tail_lines(out_name, SHORT_TAIL) if log_exists else []
        marker_tail = tail_text(out_name, MARKER_TAIL) if log_exists else ""

        scan_log_exists = run.scan_log_path.is_file()
        scan_tail = tail_text(f"{run.run_name}.par_scan", MARKER_TAIL) if scan_log_exists else ""

        store_exists = cache.store_exists()
        axis_len: Optional[int] = None
        series_len: Optional[int] = None
        if store_exists:
            axis_len, series_len = _time_axis(run, cache)

    return ProbeFacts(
        running=bool(run.running),
        log_exists=log_exists,
        log_tail_lines=len(short),
        time_advanced=bool(TIME_ADVANCED_RE.search(marker_tail)),
        omega_converged=bool(OMEGA_CONVERGED_RE.search(marker_tail)),
        wall_timer_reported=bool(WALL_TIMER_RE.search(marker_tail)),
        scan_log_exists=scan_log_exists,
        scan_complete=bool(SCAN_COMPLETE_RE.search(scan_tail)),
        store_exists=store_exists,
        time_axis_length=axis_len,
        time_series_length=series_len,
    )


def _time_axis(run, cache: TimeSeriesCache):
    # A store that is mid-write or truncated reads as an empty axis: the
    # classifier turns that into Failed instead of an exception.
    try:
        axis_len = cache.reader.dimension_length(run.netcdf_path, "t")
    except (OSError, ValueError, GkrunError):
        return 0, None
    if not axis_len:
        return axis_len or 0, None
    try:
        series = cache.series("t", status=run.status)
    except (OSError, ValueError, GkrunError):
        return axis_len, None
    return axis_len, len(series)
