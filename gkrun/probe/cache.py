# gkrun/probe/cache.py
"""
Per-run memo of series extracted from the binary store.

A cache generation lives while the run stays terminal (Complete/Failed).
Asking with a non-terminal status, or with refresh=True, starts a new
generation: everything is re-read, because an unfinished run's store is
still being written. Within a generation each variable is extracted at
most once, even with concurrent callers.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional

import numpy as np

from gkrun.errors import MissingArtifactError, MissingVariableError
from gkrun.probe.reader import TimeSeriesReader
from gkrun.runs.model import Run, Status

UNKNOWN = "unknown"


class TimeSeriesCache:
    def __init__(self, run: Run, reader: TimeSeriesReader):
        self.run = run
        self.reader = reader
        self.generation = 0
        self._lock = threading.Lock()
        self._series: Dict[str, Dict[int, Any]] = {}
        self._arrays: Dict[str, Optional[np.ndarray]] = {}

    def invalidate(self) -> None:
        with self._lock:
            self._series.clear()
            self._arrays.clear()
            self.generation += 1

    def _begin(self, status: Optional[Status], refresh: bool) -> None:
        status = status or self.run.status
        if refresh or not status.is_terminal:
            self.invalidate()

    def store_exists(self) -> bool:
        return self.reader.exists(self.run.netcdf_path)

    def series(self, name: str, *, status: Optional[Status] = None, refresh: bool = False) -> Dict[int, Any]:
        """
        Ordered mapping 1-based index -> value for a one-dimensional variable.

        When the store has the dimension `name` but no variable of that name,
        each index maps to UNKNOWN.
        """
        self._begin(status, refresh)
        with self._lock:
            cached = self._series.get(name)
            if cached is not None:
                return cached
            entry = self._extract_series(name)
            self._series[name] = entry
            return entry

    def array(self, name: str, *, status: Optional[Status] = None, refresh: bool = False) -> Optional[np.ndarray]:
        """Full n-dimensional array for `name`; None if the store has no such variable."""
        self._begin(status, refresh)
        with self._lock:
            if name in self._arrays:
                return self._arrays[name]
            self._require_store()
            arr = self.reader.variable(self.run.netcdf_path, name)
            self._arrays[name] = arr
            return arr

    # ------------------------------------------------------------------

    def _require_store(self) -> None:
        if not self.reader.exists(self.run.netcdf_path):
            raise MissingArtifactError(f"run {self.run.id}: no binary store at {self.run.netcdf_path}")

    def _extract_series(self, name: str) -> Dict[int, Any]:
        self._require_store()
        path = self.run.netcdf_path
        values = self.reader.variable(path, name)
        if values is not None:
            flat = np.asarray(values).ravel()
            return {element + 1: v.item() if hasattr(v, "item") else v for element, v in enumerate(flat)}
        length = self.reader.dimension_length(path, name)
        if length is None:
            raise MissingVariableError(f"{path.name}: no variable or dimension named {name!r}")
        return {element + 1: UNKNOWN for element in range(length)}


def cache_for(run: Run, reader: TimeSeriesReader) -> TimeSeriesCache:
    """The run's cache, created on first use; a different reader replaces it."""
    cache = run.cache
    if not isinstance(cache, TimeSeriesCache) or cache.reader is not reader:
        cache = TimeSeriesCache(run, reader)
        run.cache = cache
    return cache
