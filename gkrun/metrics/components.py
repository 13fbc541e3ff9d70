# gkrun/metrics/components.py
"""
ComponentRunSplitter — logical sub-runs of one Complete job.

Two shapes of job are split:
  - box-grid linear runs: one component per ky index, carrying the parent's
    growth rate / real frequency at that index;
  - parameter scans: one component per run of equal 'scan_parameter_value'
    samples. A boundary at element i closes the window [start+1, i]
    (1-based) with the previous value; the trailing open window is left
    unflushed, so k value changes give exactly k components.

Splitting is idempotent: run.component_runs is replaced on every call.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from gkrun.errors import GkrunError
from gkrun.metrics.aggregator import ResultAggregator
from gkrun.probe.cache import UNKNOWN, TimeSeriesCache
from gkrun.runs.model import ComponentRun, GridOption, NonlinearMode, Run, Status

log = logging.getLogger(__name__)


def scan_windows(values: List[float]):
    """(start, end, value) for each closed window of equal values; 1-based inclusive."""
    if not values:
        return []
    windows = []
    current = values[0]
    start = 0
    for i, value in enumerate(values):
        if value != current:
            windows.append((start + 1, i, current))
            current = value
            start = i
    return windows


class ComponentRunSplitter:
    def __init__(self, aggregator: Optional[ResultAggregator] = None):
        self.aggregator = aggregator or ResultAggregator()

    def applies_to(self, run: Run) -> bool:
        if run.status is not Status.COMPLETE:
            return False
        box_linear = run.grid_option is GridOption.BOX and run.nonlinear_mode is NonlinearMode.OFF
        return box_linear or run.has_scan

    def split(self, run: Run, cache: TimeSeriesCache) -> List[ComponentRun]:
        if not self.applies_to(run):
            run.component_runs = []
            return run.component_runs

        if run.grid_option is GridOption.BOX and run.nonlinear_mode is NonlinearMode.OFF:
            components = self._by_wavenumber(run, cache)
        else:
            components = self._by_scan_value(run, cache)
        run.component_runs = components
        log.info("run %s split into %d component runs", run.id, len(components))
        return components

    # ------------------------------------------------------------------

    def _by_wavenumber(self, run: Run, cache: TimeSeriesCache) -> List[ComponentRun]:
        try:
            ky_list = cache.series("ky", status=run.status)
        except (GkrunError, OSError, ValueError) as e:
            log.warning("run %s: no ky list to split on: %s", run.id, e)
            return []
        growth_rates = run.results.get("growth_rates") or {}
        frequencies = run.results.get("real_frequencies") or {}
        components = []
        for ky_index, ky in ky_list.items():
            components.append(ComponentRun(
                parent_id=run.id,
                ky_index=ky_index,
                ky=None if ky == UNKNOWN else float(ky),
                growth_rate=growth_rates.get(ky_index),
                real_frequency=frequencies.get(ky_index),
            ))
        return components

    def _by_scan_value(self, run: Run, cache: TimeSeriesCache) -> List[ComponentRun]:
        try:
            scan = cache.series("scan_parameter_value", status=run.status)
        except (GkrunError, OSError, ValueError) as e:
            log.warning("run %s: no scan parameter series: %s", run.id, e)
            return []
        values = [scan[k] for k in sorted(scan)]
        components = []
        for start, end, value in scan_windows(values):
            component = ComponentRun(
                parent_id=run.id,
                scan_index_window=(start, end),
                scan_parameter_value=value,
            )
            if not self.aggregator.config.analysis_disabled:
                component.results = self.aggregator.evaluate(run, cache, window=(start, end))
                component.growth_rate = component.results.get("max_growth_rate")
                component.real_frequency = component.results.get("freq_of_max_growth_rate")
            components.append(component)
        return components
