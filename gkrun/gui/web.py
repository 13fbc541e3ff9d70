from __future__ import annotations
import math
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from gkrun.chain.resolver import RestartChainResolver
from gkrun.config import AnalysisConfig
from gkrun.errors import RestartChainError, UnknownRunError
from gkrun.oe.core import recheck, summary_line
from gkrun.probe.reader import TimeSeriesReader
from gkrun.runs.model import ComponentRun, Run
from gkrun.runs.registry import RunRegistry


class RunSummary(BaseModel):
    id: int
    run_name: str
    directory: str
    status: str
    running: bool = False
    nprocs: Optional[str] = None
    completed_timesteps: Optional[int] = None
    percent_complete: Optional[float] = None
    time: Optional[float] = None
    run_time: Optional[float] = None
    restart_id: Optional[int] = None
    is_a_restart: bool = False
    line: str = ""


class RunDetail(RunSummary):
    config: Dict[str, Any] = {}
    results: Dict[str, Any] = {}


class ComponentSummary(BaseModel):
    parent_id: int
    scan_index_window: Optional[List[int]] = None
    scan_parameter_value: Optional[Any] = None
    ky_index: Optional[int] = None
    ky: Optional[float] = None
    growth_rate: Optional[float] = None
    real_frequency: Optional[float] = None
    results: Dict[str, Any] = {}


class ChainView(BaseModel):
    run_id: int
    chain: List[int]
    no_restarts: bool


def _clean(obj: Any) -> Any:
    """NaN/inf -> None; JSON has no spelling for them."""
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if isinstance(obj, dict):
        return {k: _clean(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_clean(v) for v in obj]
    return obj


def run_summary(run: Run) -> RunSummary:
    return RunSummary(
        id=run.id,
        run_name=run.run_name,
        directory=str(run.directory),
        status=run.status.value,
        running=bool(run.running),
        nprocs=run.nprocs,
        completed_timesteps=run.completed_timesteps,
        percent_complete=_clean(run.percent_complete),
        time=_clean(run.time),
        run_time=_clean(run.run_time),
        restart_id=run.restart_id,
        is_a_restart=run.is_a_restart,
        line=summary_line(run),
    )


def run_detail(run: Run) -> RunDetail:
    return RunDetail(
        **run_summary(run).model_dump(),
        config=_clean(run.config_dict()),
        results=_clean(run.results),
    )


def component_summary(c: ComponentRun) -> ComponentSummary:
    return ComponentSummary(**_clean(c.to_dict()))


def create_app(
    registry: RunRegistry,
    reader: Optional[TimeSeriesReader] = None,
    config: Optional[AnalysisConfig] = None,
) -> FastAPI:
    """Read-mostly status API over a RunRegistry."""
    app = FastAPI(title="gkrun status")
    resolver = RestartChainResolver(registry)

    def _lookup(run_id: int) -> Run:
        try:
            return registry.lookup(run_id)
        except UnknownRunError:
            raise HTTPException(status_code=404, detail=f"run {run_id} not found")

    @app.get("/runs", response_model=List[RunSummary])
    def list_runs(status: Optional[str] = None):
        runs = registry.runs()
        if status:
            runs = [r for r in runs if r.status.value == status]
        return [run_summary(r) for r in runs]

    @app.get("/runs/{run_id}", response_model=RunDetail)
    def get_run(run_id: int):
        return run_detail(_lookup(run_id))

    @app.get("/runs/{run_id}/chain", response_model=ChainView)
    def get_chain(run_id: int):
        run = _lookup(run_id)
        try:
            chain = resolver.restart_chain(run)
        except RestartChainError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return ChainView(run_id=run.id, chain=chain, no_restarts=resolver.no_restarts(run))

    @app.get("/runs/{run_id}/components", response_model=List[ComponentSummary])
    def get_components(run_id: int):
        return [component_summary(c) for c in _lookup(run_id).component_runs]

    @app.post("/runs/{run_id}/recheck", response_model=RunDetail)
    def post_recheck(run_id: int):
        return run_detail(recheck(_lookup(run_id), registry, reader, config))

    return app
