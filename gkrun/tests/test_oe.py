# gkrun/tests/test_oe.py
"""
Orchestrator pass over real run directories (in-memory store):
status transitions, progress, persistence and skip-if-unchanged, the
thread-pool driver and the one-line report.
"""

import os

import numpy as np
import psutil
import pytest

from gkrun.config import AnalysisConfig
from gkrun.errors import MissingArtifactError
from gkrun.oe import core
from gkrun.runs.model import Status
from gkrun.runs.record import read_record
from gkrun.runs.registry import RunRegistry

CFG = AnalysisConfig()

DONE_LOG = [f" t= {i * 0.5:.1f}  phi2= 1.0" for i in range(8)] + [" total from timer is:   120.0"]


def _complete_nonlinear(make_run, reader, run_id=1):
    run = make_run(run_id, log=DONE_LOG, nonlinear_mode="on", nstep=100, nprocs="8")
    t = np.arange(101, dtype=float) * 0.1
    phi2 = np.where(np.arange(101) < 30, np.exp(t - t[30]), 1.0)
    reader.add(run.netcdf_path, {"t": t, "phi2": phi2, "hflux_tot": np.full(101, 3.0)})
    return run


def test_complete_run_is_analysed_and_persisted(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=CFG)

    assert run.status is Status.COMPLETE
    assert run.completed_timesteps == 100
    assert np.isclose(run.percent_complete, 100.0)
    assert np.isclose(run.run_time, 120.0)
    assert np.isclose(run.time, 10.0)
    assert np.isclose(run.results["hflux_tot_stav"], 3.0)

    record = read_record(run.directory)
    assert record["run_info"]["status"] == "Complete"
    assert record["fingerprint"]


def test_unchanged_terminal_run_is_skipped(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=CFG)
    reads = sum(reader.reads.values())

    run = core.process_run(run, reader=reader, config=CFG)
    assert sum(reader.reads.values()) == reads

    with run.output_path.open("a") as f:
        f.write(" one more line\n")
    run = core.process_run(run, reader=reader, config=CFG)
    assert sum(reader.reads.values()) > reads


def test_force_reprocesses(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=CFG)
    reads = sum(reader.reads.values())
    run = core.process_run(run, reader=reader, config=CFG, force=True)
    assert sum(reader.reads.values()) > reads


def test_record_is_reloaded_into_fresh_run(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=CFG)

    again = make_run(1, nonlinear_mode="on", nstep=100)
    again = core.process_run(again, reader=reader, config=CFG)
    assert again.status is Status.COMPLETE
    assert again.results == run.results


def test_queueing_run_is_left_alone(make_run, reader):
    run = make_run(1, status=Status.QUEUEING)
    run = core.process_run(run, reader=reader, config=CFG)
    assert run.status is Status.QUEUEING
    assert read_record(run.directory) is None


def test_incomplete_run_progress_from_steps(make_run, reader, running_log):
    run = make_run(1, log=running_log, nonlinear_mode="on", nstep=1000, nwrite=10, running=True)
    reader.add(run.netcdf_path, {"t": np.arange(51, dtype=float)})

    run = core.process_run(run, reader=reader, config=CFG)

    assert run.status is Status.INCOMPLETE
    assert run.completed_timesteps == 500
    assert np.isclose(run.percent_of_total_time, 50.0)
    assert run.results == {}


def test_incomplete_run_progress_from_time(make_run, reader):
    log = ["start", "init", " t= 1.0", " t= 2.0", " t= 3.0", " t= 4.0"]
    run = make_run(1, log=log, nonlinear_mode="on", nstep=1000, delt=0.01, running=True)

    run = core.process_run(run, reader=reader, config=CFG)

    assert run.status is Status.INCOMPLETE
    assert np.isclose(run.time, 1.0)
    assert np.isclose(run.percent_of_total_time, 10.0)


def test_failed_run(make_run, reader):
    run = make_run(1, nonlinear_mode="on", nstep=100)
    run.results = {"stale": 1}
    run = core.process_run(run, reader=reader, config=CFG)
    assert run.status is Status.FAILED
    assert run.results == {}
    assert read_record(run.directory)["run_info"]["status"] == "Failed"


def test_dead_pid_is_not_running(make_run, reader, running_log, monkeypatch):
    def _gone(pid):
        raise psutil.NoSuchProcess(pid)

    monkeypatch.setattr(core.psutil, "Process", _gone)
    run = make_run(1, log=running_log, nonlinear_mode="on", nstep=100, running=True, pid=4242)
    run = core.process_run(run, reader=reader, config=CFG)
    assert run.running is False
    assert run.status is Status.FAILED


def test_refresh_running_for_live_pid(make_run):
    run = make_run(1, pid=os.getpid())
    assert core.refresh_running(run) is True


def test_get_time_without_log_raises(make_run, reader):
    run = make_run(1)
    with pytest.raises(MissingArtifactError):
        core.get_time(run)


def test_get_run_time(make_run):
    run = make_run(1, log=["a", " total from timer is: 3.5E+01"])
    assert np.isclose(core.get_run_time(run), 35.0)
    assert core.get_run_time(make_run(2)) is None


def test_analysis_disabled_still_classifies(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=AnalysisConfig(analysis_disabled=True))
    assert run.status is Status.COMPLETE
    assert run.results == {}


def test_scan_run_gets_component_runs(make_run, reader):
    run = make_run(1, log=DONE_LOG, scan_log="scan is complete\n", nonlinear_mode="off", scan_type="range")
    t = np.arange(6, dtype=float)
    reader.add(run.netcdf_path, {
        "t": t,
        "scan_parameter_value": [1, 1, 1, 2, 2, 3],
        "phi2_by_mode": np.exp(t)[:, None, None],
    })
    run = core.process_run(run, reader=reader, config=CFG)
    assert run.status is Status.COMPLETE
    assert [c.scan_index_window for c in run.component_runs] == [(1, 3), (4, 5)]
    assert read_record(run.directory)["components"][1]["scan_index_window"] == [4, 5]


def test_ledger_mirror_when_configured(make_run, reader, monkeypatch):
    calls = []
    monkeypatch.setattr(core.ledger, "upsert_run", lambda run, dsn=None: calls.append((run.id, dsn)))
    monkeypatch.setattr(core.ledger, "log_error", lambda run, message, dsn=None: calls.append(("err", run.id)))
    cfg = AnalysisConfig(database_url="postgresql:///gkrun")

    core.process_run(_complete_nonlinear(make_run, reader), reader=reader, config=cfg)
    core.process_run(make_run(2, nonlinear_mode="on"), reader=reader, config=cfg)

    assert calls == [(1, "postgresql:///gkrun"), (2, "postgresql:///gkrun"), ("err", 2)]


def test_process_runs_in_parallel(make_run, reader):
    runs = [_complete_nonlinear(make_run, reader, i) for i in range(1, 5)]
    registry = RunRegistry()
    done = core.process_runs(runs, registry, reader, CFG, workers=2)
    assert [r.id for r in done] == [1, 2, 3, 4]
    assert all(r.status is Status.COMPLETE for r in done)
    assert len(registry) == 4


def test_process_runs_abort_and_keep_going(make_run, reader, monkeypatch):
    runs = [_complete_nonlinear(make_run, reader, i) for i in range(1, 4)]
    real_probe = core.probe

    def flaky(run, cache):
        if run.id == 2:
            raise RuntimeError("disk gone")
        return real_probe(run, cache)

    monkeypatch.setattr(core, "probe", flaky)

    with pytest.raises(RuntimeError, match="disk gone"):
        core.process_runs(runs, reader=reader, config=CFG, workers=1)
    assert core.ABORT.is_set()

    done = core.process_runs(runs, reader=reader, config=CFG, workers=1, force=True, keep_going=True)
    assert [r.id for r in done] == [1, 3]
    assert not core.ABORT.is_set()


def test_recheck_rebuilds_from_scratch(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=CFG)
    run.results["stale"] = True
    run = core.recheck(run, reader=reader, config=CFG)
    assert "stale" not in run.results
    assert run.status is Status.COMPLETE
    assert "stale" not in read_record(run.directory)["results"]


def test_summary_line(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    run = core.process_run(run, reader=reader, config=CFG)
    run.restart_id = 9
    line = core.summary_line(run)
    assert line.startswith(" 1 v_id_1 (res: 9)")
    assert "C:2.0(8)" in line
    assert "100%" in line
    assert "hflux:3.00e+00" in line


def test_registry_readers_never_see_a_half_derived_run(make_run, reader):
    run = _complete_nonlinear(make_run, reader)
    registry = RunRegistry([run])
    seen = []
    read_variable = reader.variable

    def watch(path, name):
        if name == "phi2":
            current = registry.lookup(1)
            seen.append((current.status, dict(current.results)))
        return read_variable(path, name)

    reader.variable = watch
    done = core.process_run(run, registry, reader, CFG)

    assert seen and all(entry == (Status.NOT_STARTED, {}) for entry in seen)
    assert registry.lookup(1) is done
    assert done.status is Status.COMPLETE
    assert np.isclose(done.results["hflux_tot_stav"], 3.0)
    assert run.status is Status.NOT_STARTED


def test_process_runs_publishes_each_run_once_complete(make_run, reader):
    runs = [_complete_nonlinear(make_run, reader, i) for i in range(1, 3)]
    registry = RunRegistry()
    published = []
    register = registry.register

    def record(run):
        published.append((run.id, run.status, bool(run.results)))
        return register(run)

    registry.register = record
    core.process_runs(runs, registry, reader, CFG, workers=2)

    assert published[:2] == [(1, Status.NOT_STARTED, False), (2, Status.NOT_STARTED, False)]
    assert sorted(published[2:]) == [(1, Status.COMPLETE, True), (2, Status.COMPLETE, True)]
