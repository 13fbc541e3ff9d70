# gkrun/tests/test_paths.py
"""Working-directory scope, bounded tails, artifact fingerprints."""

import os

import pytest

from gkrun.common.hashutil import artifact_fingerprint, hash_json
from gkrun.common.paths import tail_lines, working_directory


def test_working_directory_restores_on_error(tmp_path):
    before = os.getcwd()
    with pytest.raises(RuntimeError):
        with working_directory(tmp_path):
            assert os.getcwd() == str(tmp_path.resolve())
            raise RuntimeError("inside")
    assert os.getcwd() == before


def test_tail_lines(tmp_path):
    p = tmp_path / "x.out"
    p.write_text("".join(f"line {i}\n" for i in range(100)))
    assert tail_lines(p, 3) == ["line 97", "line 98", "line 99"]
    assert tail_lines(tmp_path / "missing.out", 3) == []
    assert tail_lines(p, 0) == []


def test_fingerprint_tracks_changes(tmp_path):
    p = tmp_path / "v.out"
    missing = tmp_path / "v.out.nc"
    empty = artifact_fingerprint([p, missing])
    p.write_text("a\n")
    first = artifact_fingerprint([p, missing])
    assert first != empty
    assert artifact_fingerprint([p, missing]) == first
    with p.open("a") as f:
        f.write("b\n")
    assert artifact_fingerprint([p, missing]) != first


def test_hash_json_is_key_order_independent():
    assert hash_json({"a": 1, "b": 2}) == hash_json({"b": 2, "a": 1})
