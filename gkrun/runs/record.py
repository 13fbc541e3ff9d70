# gkrun/runs/record.py
"""
Run record — the JSON file kept next to a run's artifacts.

Layout of <run dir>/.gkrun_record.json:
    {
      "config":      {... Run.config_dict() ...},
      "run_info":    {... Run.run_info() ...},
      "results":     {... derived metrics ...},
      "components":  [... ComponentRun.to_dict() ...],
      "fingerprint": "<sha256 of the artifacts the results came from>",
      "written_at":  "2025-01-20T08:15:00Z"
    }

JSON only has string keys; index-keyed mappings (growth_rates, ...) get
their integer keys back on read.
"""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from gkrun.common.hashutil import _json_default
from gkrun.runs.model import RUN_INFO_FIELDS, ComponentRun, Run

RECORD_NAME = ".gkrun_record.json"


def record_path(directory) -> Path:
    return Path(directory) / RECORD_NAME


def _restore_keys(obj: Any) -> Any:
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if isinstance(k, str) and k.lstrip("-").isdigit():
                k = int(k)
            out[k] = _restore_keys(v)
        return out
    if isinstance(obj, list):
        return [_restore_keys(v) for v in obj]
    return obj


def write_record(run: Run, fingerprint: Optional[str] = None) -> Path:
    """Atomically (write + rename) persist the run's state."""
    payload = {
        "config": run.config_dict(),
        "run_info": run.run_info(),
        "results": run.results,
        "components": [c.to_dict() for c in run.component_runs],
        "fingerprint": fingerprint,
        "written_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }
    p = record_path(run.directory)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, default=_json_default), encoding="utf-8")
    os.replace(tmp, p)
    return p


def read_record(directory) -> Optional[Dict[str, Any]]:
    p = record_path(directory)
    if not p.is_file():
        return None
    data = json.loads(p.read_text(encoding="utf-8"))
    data["results"] = _restore_keys(data.get("results") or {})
    data["components"] = [_restore_keys(c) for c in data.get("components") or []]
    return data


def delete_record(directory) -> bool:
    p = record_path(directory)
    try:
        p.unlink()
        return True
    except FileNotFoundError:
        return False


def apply_record(run: Run, record: Dict[str, Any]) -> Run:
    """Overlay persisted run info, results and components onto `run`."""
    info = record.get("run_info") or {}
    for name in RUN_INFO_FIELDS:
        if name in info:
            setattr(run, name, info[name])
    run.__post_init__()
    run.results = dict(record.get("results") or {})
    run.component_runs = [ComponentRun.from_dict(c) for c in record.get("components") or []]
    return run


def load_run(directory) -> Run:
    """Rebuild a Run from the record in `directory`."""
    record = read_record(directory)
    if record is None:
        raise FileNotFoundError(f"no run record at {record_path(directory)}")
    cfg = dict(record["config"])
    cfg["directory"] = Path(directory)
    run = Run(**cfg)
    return apply_record(run, record)
