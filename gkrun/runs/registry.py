# gkrun/runs/registry.py
"""
RunRegistry — the one piece of state shared between worker threads.

Maps run id -> Run. Writers publish a fully constructed Run with a single
register() call; readers get snapshots taken under the lock, so chain walks
never see a half-registered run even while other threads register new ones.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from gkrun.errors import RestartChainError, UnknownRunError
from gkrun.runs.model import Run


class RunRegistry:
    def __init__(self, runs: Optional[Iterable[Run]] = None):
        self._lock = threading.RLock()
        self._runs: Dict[int, Run] = {}
        for run in runs or ():
            self.register(run)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._runs

    def register(self, run: Run) -> Run:
        """
        Publish `run`. Re-registering the same id replaces the previous record.

        Raises RestartChainError if the run's restart_id is dangling or would
        close a cycle through the runs already known.
        """
        with self._lock:
            if run.restart_id is not None:
                self._check_ancestry(run)
            self._runs[run.id] = run
        return run

    def register_many(self, runs: Iterable[Run]) -> None:
        """Register runs in any order; parents are published before their children."""
        pending = list(runs)
        with self._lock:
            while pending:
                known = set(self._runs) | {r.id for r in pending}
                ready = [r for r in pending if r.restart_id is None or r.restart_id in self._runs
                         or r.restart_id not in known]
                if not ready:
                    ids = sorted(r.id for r in pending)
                    raise RestartChainError(f"restart cycle among runs {ids}")
                for run in ready:
                    self.register(run)
                published = {id(r) for r in ready}
                pending = [r for r in pending if id(r) not in published]

    def unregister(self, run_id: int) -> Run:
        with self._lock:
            try:
                return self._runs.pop(run_id)
            except KeyError:
                raise UnknownRunError(run_id) from None

    def lookup(self, run_id: int) -> Run:
        with self._lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise UnknownRunError(run_id) from None

    def get(self, run_id: int) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[Run]:
        """Snapshot of all registered runs, ordered by id."""
        with self._lock:
            return [self._runs[k] for k in sorted(self._runs)]

    def children_of(self, run_id: int) -> List[Run]:
        """Runs restarted directly from `run_id`, lowest id first."""
        return [r for r in self.runs() if r.restart_id == run_id]

    def next_id(self) -> int:
        with self._lock:
            return (max(self._runs) + 1) if self._runs else 1

    # ------------------------------------------------------------------

    def _check_ancestry(self, run: Run) -> None:
        seen = {run.id}
        current = run.restart_id
        # at most one step per known run; anything longer is a cycle
        for _ in range(len(self._runs) + 1):
            if current is None:
                return
            if current in seen:
                raise RestartChainError(
                    f"run {run.id}: restart_id {run.restart_id} leads back to run {current}"
                )
            parent = self._runs.get(current)
            if parent is None:
                raise RestartChainError(f"run {run.id}: restart_id {current} is not a registered run")
            seen.add(current)
            current = parent.restart_id
        raise RestartChainError(f"run {run.id}: restart chain longer than the registry")
