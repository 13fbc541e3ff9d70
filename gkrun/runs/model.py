# gkrun/runs/model.py
"""
Run / ComponentRun records and the closed enums the pipeline dispatches on.

A Run carries three kinds of state:
  - configuration snapshot (what classification and analysis need to know),
  - lifecycle fields written by the classifier / orchestrator,
  - restart linkage (plain ids, resolved through a RunRegistry).

Derived metrics live in `results` (metric name -> value). Wavenumber-resolved
metrics are mappings keyed by the 1-based index, e.g. results["growth_rates"][2].
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class Status(str, Enum):
    NOT_STARTED = "NotStarted"
    QUEUEING = "Queueing"
    INCOMPLETE = "Incomplete"
    COMPLETE = "Complete"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.COMPLETE, Status.FAILED)


class NonlinearMode(str, Enum):
    ON = "on"
    OFF = "off"


class GridOption(str, Enum):
    SINGLE = "single"
    BOX = "box"
    RANGE = "range"


# Configuration a restart child takes from its parent unless it sets its own value.
RESTART_INHERITABLE: Tuple[str, ...] = (
    "nstep",
    "nonlinear_mode",
    "grid_option",
    "scan_type",
    "omega_tolerance",
    "exit_when_converged",
    "nwrite",
    "delt",
)

# Lifecycle / linkage fields persisted in the run record next to `results`.
RUN_INFO_FIELDS: Tuple[str, ...] = (
    "status",
    "time",
    "run_time",
    "percent_of_total_time",
    "completed_timesteps",
    "is_a_restart",
    "restart_id",
    "restart_run_name",
    "response_id",
    "restart_file",
    "restart_dir",
    "response_dir",
)


@dataclass
class ComponentRun:
    """One logical sub-run of a scan job or one mode of a box-grid linear job."""
    parent_id: int
    scan_index_window: Optional[Tuple[int, int]] = None  # inclusive, 1-based
    scan_parameter_value: Optional[float] = None
    ky_index: Optional[int] = None
    ky: Optional[float] = None
    growth_rate: Optional[float] = None
    real_frequency: Optional[float] = None
    results: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parent_id": self.parent_id,
            "scan_index_window": list(self.scan_index_window) if self.scan_index_window else None,
            "scan_parameter_value": self.scan_parameter_value,
            "ky_index": self.ky_index,
            "ky": self.ky,
            "growth_rate": self.growth_rate,
            "real_frequency": self.real_frequency,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ComponentRun":
        window = d.get("scan_index_window")
        return cls(
            parent_id=int(d["parent_id"]),
            scan_index_window=(int(window[0]), int(window[1])) if window else None,
            scan_parameter_value=d.get("scan_parameter_value"),
            ky_index=d.get("ky_index"),
            ky=d.get("ky"),
            growth_rate=d.get("growth_rate"),
            real_frequency=d.get("real_frequency"),
            results=dict(d.get("results") or {}),
        )


@dataclass
class Run:
    id: int
    run_name: str
    directory: Path

    # configuration snapshot (None = not set, see RESTART_INHERITABLE)
    nstep: Optional[int] = None
    nonlinear_mode: Optional[NonlinearMode] = None
    grid_option: Optional[GridOption] = None
    scan_type: Optional[str] = None
    omega_tolerance: Optional[float] = None
    exit_when_converged: Optional[bool] = None
    nwrite: Optional[int] = None
    delt: Optional[float] = None
    nprocs: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    # lifecycle
    status: Status = Status.NOT_STARTED
    running: bool = False
    pid: Optional[int] = None
    completed_timesteps: Optional[int] = None
    percent_of_total_time: Optional[float] = None
    time: Optional[float] = None
    run_time: Optional[float] = None

    # restart linkage (weak: ids only)
    restart_id: Optional[int] = None
    restart_run_name: Optional[str] = None
    is_a_restart: bool = False
    response_id: Optional[int] = None
    restart_file: Optional[str] = None
    restart_dir: Optional[str] = None
    response_dir: Optional[str] = None
    read_response: bool = False

    # derived
    results: Dict[str, Any] = field(default_factory=dict)
    component_runs: List[ComponentRun] = field(default_factory=list)

    # per-run series cache, attached by gkrun.probe.cache.cache_for
    cache: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.directory = Path(self.directory).expanduser().absolute()
        if isinstance(self.status, str):
            self.status = Status(self.status)
        if isinstance(self.nonlinear_mode, str):
            self.nonlinear_mode = NonlinearMode(self.nonlinear_mode)
        if isinstance(self.grid_option, str):
            self.grid_option = GridOption(self.grid_option)

    # --- convenience predicates used by classifier / aggregator -------------

    @property
    def is_linear(self) -> bool:
        return self.nonlinear_mode is NonlinearMode.OFF

    @property
    def is_nonlinear(self) -> bool:
        return self.nonlinear_mode is NonlinearMode.ON

    @property
    def has_scan(self) -> bool:
        return bool(self.scan_type) and self.scan_type != "none"

    @property
    def write_interval(self) -> int:
        return int(self.nwrite) if self.nwrite else 1

    @property
    def percent_complete(self) -> Optional[float]:
        if self.completed_timesteps is not None and self.nstep:
            return float(self.completed_timesteps) / float(self.nstep) * 100.0
        return self.percent_of_total_time

    # --- artifact names ------------------------------------------------------

    @property
    def output_path(self) -> Path:
        return self.directory / f"{self.run_name}.out"

    @property
    def netcdf_path(self) -> Path:
        return self.directory / f"{self.run_name}.out.nc"

    @property
    def scan_log_path(self) -> Path:
        return self.directory / f"{self.run_name}.par_scan"

    # --- (de)serialization for the run record --------------------------------

    def config_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_name": self.run_name,
            "directory": str(self.directory),
            "nstep": self.nstep,
            "nonlinear_mode": self.nonlinear_mode.value if self.nonlinear_mode else None,
            "grid_option": self.grid_option.value if self.grid_option else None,
            "scan_type": self.scan_type,
            "omega_tolerance": self.omega_tolerance,
            "exit_when_converged": self.exit_when_converged,
            "nwrite": self.nwrite,
            "delt": self.delt,
            "nprocs": self.nprocs,
            "pid": self.pid,
            "read_response": self.read_response,
            "parameters": dict(self.parameters),
        }

    def run_info(self) -> Dict[str, Any]:
        info = {name: getattr(self, name) for name in RUN_INFO_FIELDS}
        info["status"] = self.status.value
        return info
