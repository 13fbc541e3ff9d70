# gkrun/tests/test_registry.py
"""RunRegistry snapshots, lookups and concurrent registration."""

import threading

import pytest

from gkrun.errors import UnknownRunError
from gkrun.runs.registry import RunRegistry


def test_lookup_and_unregister(make_run):
    reg = RunRegistry([make_run(2), make_run(1)])
    assert [r.id for r in reg.runs()] == [1, 2]
    assert reg.next_id() == 3
    reg.unregister(2)
    assert 2 not in reg
    with pytest.raises(UnknownRunError):
        reg.lookup(2)
    with pytest.raises(UnknownRunError):
        reg.unregister(2)
    assert reg.get(2) is None


def test_reregister_replaces(make_run):
    reg = RunRegistry()
    reg.register(make_run(1, nstep=10))
    reg.register(make_run(1, nstep=20))
    assert len(reg) == 1
    assert reg.lookup(1).nstep == 20


def test_concurrent_registration(make_run):
    reg = RunRegistry([make_run(1)])
    runs = [make_run(i, restart_id=1) for i in range(2, 42)]

    def worker(chunk):
        for run in chunk:
            reg.register(run)

    threads = [threading.Thread(target=worker, args=(runs[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(reg) == 41
    assert [r.id for r in reg.children_of(1)] == list(range(2, 42))
