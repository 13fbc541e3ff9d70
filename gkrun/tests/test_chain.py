# gkrun/tests/test_chain.py
"""
Restart chains: creating restarts (checkpoint / response transfer), chain
walks, cycle and dangling-reference detection, renaming and deleting runs.
"""

import logging

import pytest

from gkrun.chain import transfer
from gkrun.chain.resolver import RestartChainResolver
from gkrun.errors import RestartChainError, RestartConfigurationError, UnknownRunError
from gkrun.runs.model import Run
from gkrun.runs.registry import RunRegistry


def _checkpoints(run, names):
    for name in names:
        (run.directory / name).parent.mkdir(parents=True, exist_ok=True)
        (run.directory / name).write_text(name)


@pytest.fixture
def registry():
    return RunRegistry()


@pytest.fixture
def resolver(registry):
    return RestartChainResolver(registry)


def test_nprocs_mismatch_is_fatal_and_copies_nothing(make_run, registry, resolver):
    parent = registry.register(make_run(1, nprocs="4x2", nstep=100))
    _checkpoints(parent, ["v_id_1.nc.0", "v_id_1.nc.1"])
    child = make_run(2, nprocs="4x1")

    with pytest.raises(RestartConfigurationError, match="same number of processors"):
        resolver.create_restart(parent, child)

    assert not (child.directory / "nc").exists()
    assert child.restart_id is None
    assert child.nstep is None
    assert 2 not in registry


def test_missing_child_nprocs_is_fatal(make_run, registry, resolver):
    parent = registry.register(make_run(1, nprocs="8"))
    with pytest.raises(RestartConfigurationError):
        resolver.create_restart(parent, make_run(2))


def test_restart_from_itself_is_fatal(make_run, registry, resolver):
    run = registry.register(make_run(1, nprocs="8"))
    with pytest.raises(RestartConfigurationError):
        resolver.create_restart(run, run)


def test_restart_copies_per_process_checkpoints(make_run, registry, resolver):
    parent = registry.register(make_run(1, nprocs="4x2", nstep=500, nonlinear_mode="on", delt=0.01,
                                        parameters={"beta": 0.01, "restart_file": "old.nc"}))
    _checkpoints(parent, ["v_id_1.nc.0", "v_id_1.nc.1", "v_id_1.out.nc"])
    child = make_run(2, nprocs="4x2", delt=0.005)

    report = resolver.create_restart(parent, child)

    assert report.checkpoint.count == 2
    nc = child.directory / "nc"
    assert sorted(p.name for p in nc.iterdir()) == ["v_id_2.nc.0", "v_id_2.nc.1"]
    assert (nc / "v_id_2.nc.1").read_text() == "v_id_1.nc.1"
    assert child.restart_file == "v_id_2.nc"
    assert child.restart_dir == "nc"

    assert child.restart_id == 1
    assert child.restart_run_name == "v_id_1"
    assert child.is_a_restart
    assert child.nstep == 500
    assert child.delt == 0.005  # own setting kept
    assert child.parameters["beta"] == 0.01
    assert "restart_file" not in child.parameters
    assert child.parameters["ginit_option"] == "many"
    assert child.parameters["delt_option"] == "check_restart"
    assert registry.lookup(2) is child


def test_restart_without_checkpoints_warns_and_registers(make_run, registry, resolver, caplog):
    parent = registry.register(make_run(1, nprocs="8"))
    child = make_run(2, nprocs="8")

    with caplog.at_level(logging.WARNING):
        report = resolver.create_restart(parent, child)

    assert report.checkpoint.count == 0
    assert "no checkpoint files" in caplog.text
    assert registry.lookup(2).restart_id == 1


def test_checkpoint_discovery_tiers(make_run):
    sub = make_run(1)
    _checkpoints(sub, ["restart/v_id_1.nc.0", "restart/v_id_1.nc.1"])
    assert transfer.list_restart_files(sub) == ["restart/v_id_1.nc.0", "restart/v_id_1.nc.1"]

    single = make_run(2)
    _checkpoints(single, ["nc/v_id_2.nc"])
    assert transfer.list_restart_files(single) == ["nc/v_id_2.nc"]

    top = make_run(3)
    _checkpoints(top, ["v_id_3.nc_ene", "v_id_3.nc.0", "restart/other.nc.0"])
    assert transfer.list_restart_files(top) == ["v_id_3.nc.0", "v_id_3.nc_ene"]


def test_single_file_checkpoint_keeps_no_suffix(make_run, registry, resolver):
    parent = registry.register(make_run(1, nprocs="2"))
    _checkpoints(parent, ["nc/v_id_1.nc"])
    child = make_run(2, nprocs="2")
    resolver.create_restart(parent, child)
    assert (child.directory / "nc" / "v_id_2.nc").is_file()


def test_response_files_follow_read_response(make_run, registry, resolver):
    parent = registry.register(make_run(1, nprocs="2"))
    _checkpoints(parent, ["response/v_id_1_ik_1_is_1.response", "response/v_id_1_ik_2_is_1.response"])
    child = make_run(2, nprocs="2", read_response=True)

    report = resolver.create_restart(parent, child)

    assert report.response.count == 2
    assert child.response_id == 1
    names = sorted(p.name for p in (child.directory / "response").iterdir())
    assert names == ["v_id_2_ik_1_is_1.response", "v_id_2_ik_2_is_1.response"]


def _chain(make_run, registry, n):
    runs = [registry.register(make_run(1))]
    for i in range(2, n + 1):
        runs.append(registry.register(make_run(i, restart_id=i - 1)))
    return runs


def test_restart_chain_from_any_member(make_run, registry, resolver):
    r1, r2, r3 = _chain(make_run, registry, 3)
    assert resolver.restart_chain(r2) == [1, 2, 3]
    assert resolver.root_of(r3) is r1
    assert resolver.latest_in_chain(r1) is r3
    assert resolver.no_restarts(r3)
    assert not resolver.no_restarts(r1)


def test_cycle_is_rejected(make_run, registry):
    r1, r2 = _chain(make_run, registry, 2)
    r1.restart_id = 2
    with pytest.raises(RestartChainError):
        registry.register(r1)


def test_dangling_restart_id_is_rejected(make_run, registry):
    with pytest.raises(RestartChainError):
        registry.register(make_run(5, restart_id=4))


def test_register_many_orders_parents_first(make_run, registry, resolver):
    runs = [make_run(3, restart_id=2), make_run(2, restart_id=1), make_run(1)]
    registry.register_many(runs)
    assert resolver.restart_chain(runs[0]) == [1, 2, 3]


def test_chain_walk_terminates_for_every_run(make_run, registry, resolver):
    _chain(make_run, registry, 5)
    for run in registry.runs():
        current, steps = run, 0
        while current.restart_id is not None:
            current = registry.lookup(current.restart_id)
            steps += 1
            assert steps <= len(registry)
        assert current.id == 1


def test_rename_run_updates_files_and_references(make_run, registry, resolver, tmp_path):
    r1, r2, r3 = _chain(make_run, registry, 3)
    r2.output_path.write_text("log")
    _checkpoints(r2, ["nc/v_id_2.nc.0"])
    r2.restart_dir = "nc"
    r2.restart_file = "v_id_2.nc"

    resolver.rename_run(r2, 7)

    assert r2.id == 7
    assert r2.directory == tmp_path / "id_7"
    assert r2.run_name == "v_id_7"
    assert r2.output_path.read_text() == "log"
    assert (r2.directory / "nc" / "v_id_7.nc.0").is_file()
    assert r2.restart_file == "v_id_7.nc"
    assert r3.restart_id == 7
    assert 2 not in registry
    assert resolver.restart_chain(r1) == [1, 7, 3]


def test_rename_to_taken_id_is_refused(make_run, registry, resolver):
    r1, r2 = _chain(make_run, registry, 2)
    with pytest.raises(RestartConfigurationError):
        resolver.rename_run(r2, 1)


def test_delete_run_orphans_become_roots(make_run, registry, resolver):
    r1, r2, r3 = _chain(make_run, registry, 3)
    orphans = resolver.delete_run(r2)
    assert orphans == [r3]
    assert r3.restart_id is None
    assert resolver.restart_chain(r3) == [3]
    with pytest.raises(UnknownRunError):
        registry.lookup(2)


def test_standardize_and_delete_restart_files(make_run):
    run = make_run(1)
    _checkpoints(run, ["restart/v_id_1.nc.0", "restart/v_id_1.nc.1"])

    moved = transfer.standardize_restart_files(run)
    assert sorted(p.name for p in moved) == ["v_id_1.nc.0", "v_id_1.nc.1"]
    assert run.restart_dir == "nc"
    assert not (run.directory / "restart" / "v_id_1.nc.0").exists()

    removed = transfer.delete_restart_files(run)
    assert len(removed) == 2
    assert transfer.list_restart_files(run) == []


def test_failed_checkpoint_copy_leaves_child_untouched(make_run, registry, resolver, monkeypatch):
    parent = registry.register(make_run(1, nprocs="2", nstep=500, parameters={"beta": 0.01}))
    _checkpoints(parent, ["v_id_1.nc.0", "v_id_1.nc.1"])
    child = make_run(2, nprocs="2")
    real_copy = transfer.shutil.copy2

    def copy_until_full(src, dest):
        if str(src).endswith(".nc.1"):
            raise OSError("No space left on device")
        return real_copy(src, dest)

    monkeypatch.setattr(transfer.shutil, "copy2", copy_until_full)
    with pytest.raises(OSError, match="No space left"):
        resolver.create_restart(parent, child)

    assert list((child.directory / "nc").iterdir()) == []
    assert child.restart_id is None
    assert child.restart_file is None
    assert child.nstep is None
    assert not child.is_a_restart
    assert child.parameters == {}
    assert 2 not in registry


def test_failed_response_copy_removes_checkpoints(make_run, registry, resolver, monkeypatch):
    parent = registry.register(make_run(1, nprocs="2"))
    _checkpoints(parent, ["v_id_1.nc.0", "response/v_id_1_ik_1_is_1.response"])
    child = make_run(2, nprocs="2", read_response=True)
    real_copy = transfer.shutil.copy2

    def no_responses(src, dest):
        if str(src).endswith(".response"):
            raise PermissionError("read-only response directory")
        return real_copy(src, dest)

    monkeypatch.setattr(transfer.shutil, "copy2", no_responses)
    with pytest.raises(PermissionError):
        resolver.create_restart(parent, child)

    assert list((child.directory / "nc").iterdir()) == []
    assert child.response_id is None
    assert child.restart_id is None
    assert 2 not in registry


def test_restart_onto_an_ancestor_is_refused(make_run, registry, resolver):
    r1 = registry.register(make_run(1, nprocs="2"))
    r2 = registry.register(make_run(2, nprocs="2", restart_id=1))
    with pytest.raises(RestartConfigurationError, match="ancestor"):
        resolver.create_restart(r2, r1)
    assert r1.restart_id is None


def test_rename_only_touches_the_run_directory_name(registry, resolver, tmp_path):
    directory = tmp_path / "id_1_batch" / "v_id_1"
    directory.mkdir(parents=True)
    run = registry.register(Run(id=1, run_name="v_id_1", directory=directory))
    run.output_path.write_text("log")
    (directory / "v_id_12.in").write_text("neighbour input")

    resolver.rename_run(run, 5)

    assert run.directory == tmp_path / "id_1_batch" / "v_id_5"
    assert run.run_name == "v_id_5"
    assert run.output_path.read_text() == "log"
    assert (run.directory / "v_id_12.in").is_file()
    assert not (tmp_path / "id_5_batch").exists()


def test_rename_does_not_touch_longer_ids(make_run, registry, resolver):
    run = registry.register(make_run(1, restart_file="v_id_1.nc"))
    (run.directory / "v_id_1.in").write_text("mine")
    (run.directory / "v_id_10.in").write_text("not mine")

    resolver.rename_run(run, 3)

    assert sorted(p.name for p in run.directory.iterdir()) == ["v_id_10.in", "v_id_3.in"]
    assert run.restart_file == "v_id_3.nc"
