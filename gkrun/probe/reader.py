# gkrun/probe/reader.py
"""
Time-series reader interface and the netCDF implementation.

Everything above this module talks to a TimeSeriesReader; only NetCDFReader
knows that the store is a netCDF file. Tests substitute an in-memory reader.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

import numpy as np

from gkrun.errors import MissingArtifactError


class TimeSeriesReader(Protocol):
    def exists(self, path: Path) -> bool:
        ...

    def dimension_length(self, path: Path, name: str) -> Optional[int]:
        """Length of dimension `name`, or None if the store has no such dimension."""
        ...

    def variable(self, path: Path, name: str) -> Optional[np.ndarray]:
        """Full array of variable `name`, or None if the store has no such variable."""
        ...


class NetCDFReader:
    """
    Reads `<run_name>.out.nc` stores through xarray.

    Times are left undecoded: the simulation writes normalised times, not
    calendar dates. Dimensions come from netCDF4 directly, since xarray
    drops a dimension that no variable uses.
    """

    def __init__(self, engine: Optional[str] = None):
        self.engine = engine

    @staticmethod
    def _existing(path: Path) -> Path:
        p = Path(path)
        if not p.is_file():
            raise MissingArtifactError(f"binary store not found at {p}")
        return p

    def _open(self, path: Path):
        import xarray as xr

        return xr.open_dataset(self._existing(path), engine=self.engine, decode_times=False, cache=False)

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def dimension_length(self, path: Path, name: str) -> Optional[int]:
        import netCDF4

        with netCDF4.Dataset(str(self._existing(path)), "r") as ds:
            dim = ds.dimensions.get(name)
            return None if dim is None else len(dim)

    def variable(self, path: Path, name: str) -> Optional[np.ndarray]:
        with self._open(path) as ds:
            if name not in ds.variables:
                return None
            return np.asarray(ds[name].values)
