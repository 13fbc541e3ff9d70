# gkrun/tests/conftest.py
"""
Shared fixtures: an in-memory TimeSeriesReader and a run-directory factory.

Run directories live under tmp_path as id_<N>/ with run_name v_id_<N>, the
same id-token layout the rename helpers rely on.
"""

from collections import Counter
from pathlib import Path

import numpy as np
import pytest

from gkrun.errors import MissingArtifactError
from gkrun.runs.model import Run


class MemoryReader:
    """Stores keyed by path; each holds variables (arrays) and dimension lengths."""

    def __init__(self):
        self.stores = {}
        self.reads = Counter()

    def add(self, path, variables=None, dims=None, touch=True):
        path = Path(path)
        variables = {k: np.asarray(v, dtype=float) for k, v in (variables or {}).items()}
        dims = dict(dims or {})
        if "t" in variables and "t" not in dims:
            dims["t"] = len(variables["t"])
        self.stores[path] = {"variables": variables, "dims": dims}
        if touch and path.parent.is_dir():
            path.write_bytes(b"CDF\x01")
        return path

    def _store(self, path):
        try:
            return self.stores[Path(path)]
        except KeyError:
            raise MissingArtifactError(f"binary store not found at {path}") from None

    def exists(self, path):
        return Path(path) in self.stores

    def dimension_length(self, path, name):
        return self._store(path)["dims"].get(name)

    def variable(self, path, name):
        self.reads[name] += 1
        v = self._store(path)["variables"].get(name)
        return None if v is None else v.copy()


RUNNING_LOG = [
    " gs2 starting",
    " nproc 8",
    " istep= 0 t= 0.0",
    " istep= 10 t= 0.5",
    " istep= 20 t= 1.0",
    " istep= 30 t= 1.5",
]


@pytest.fixture
def reader():
    return MemoryReader()


@pytest.fixture
def make_run(tmp_path):
    def _make(run_id=1, *, log=None, scan_log=None, **fields):
        directory = tmp_path / f"id_{run_id}"
        directory.mkdir(parents=True, exist_ok=True)
        run = Run(id=run_id, run_name=f"v_id_{run_id}", directory=directory, **fields)
        if log is not None:
            run.output_path.write_text("\n".join(log) + "\n")
        if scan_log is not None:
            run.scan_log_path.write_text(scan_log)
        return run
    return _make


@pytest.fixture
def running_log():
    return list(RUNNING_LOG)
