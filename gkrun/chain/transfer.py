# gkrun/chain/transfer.py
"""
Checkpoint and response file discovery / copying between runs.

Checkpoint discovery is tiered; the first tier that finds anything wins:
  1. <run dir>/*.nc.N or *.nc_ene        (one file per process)
  2. the same pattern in the first subdirectory that has any
  3. nc/*.nc                             (single-file restart)

Copies land in <child dir>/nc/<child run_name>.nc<suffix>, keeping the
per-process suffix (".3", "_ene", or nothing for single-file restarts).

Response files: response/*.response, then the run dir, then any subdirectory.
They are renamed to <child run_name>_ik_N_is_M.response.

All paths returned by the list_* helpers are relative to the run directory.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from gkrun.common.paths import ensure_dir, working_directory
from gkrun.runs.model import Run

log = logging.getLogger(__name__)

CHECKPOINT_RE = re.compile(r"\.nc(?:\.\d+|_ene)$")
SINGLE_CHECKPOINT_RE = re.compile(r"\.nc$")
PROC_SUFFIX_RE = re.compile(r"(?:\.\d+|_ene)$")
RESPONSE_RE = re.compile(r"\.response$")
RESPONSE_TAG_RE = re.compile(r"_ik_\d+_is_\d+\.response$")

RESTART_DIR = "nc"
RESPONSE_DIR = "response"


@dataclass
class TransferReport:
    kind: str                                  # 'checkpoint' | 'response'
    copied: List[Path] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.copied)


def _matching(directory: Path, pattern: re.Pattern, prefix: str = "") -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(
        f"{prefix}{p.name}" for p in directory.iterdir()
        if p.is_file() and pattern.search(p.name)
    )


def _subdirs() -> List[Path]:
    return sorted(p for p in Path(".").iterdir() if p.is_dir())


def list_restart_files(run: Run) -> List[str]:
    with working_directory(run.directory):
        files = _matching(Path("."), CHECKPOINT_RE)
        if not files:
            for sub in _subdirs():
                files = _matching(sub, CHECKPOINT_RE, prefix=f"{sub.name}/")
                if files:
                    break
        if not files:
            files = _matching(Path(RESTART_DIR), SINGLE_CHECKPOINT_RE, prefix=f"{RESTART_DIR}/")
        return files


def list_response_files(run: Run) -> List[str]:
    with working_directory(run.directory):
        files = _matching(Path(RESPONSE_DIR), RESPONSE_RE, prefix=f"{RESPONSE_DIR}/")
        if not files:
            files = _matching(Path("."), RESPONSE_RE)
        if not files:
            for sub in _subdirs():
                files = _matching(sub, RESPONSE_RE, prefix=f"{sub.name}/")
                if files:
                    break
        return files


def proc_suffix(name: str) -> str:
    m = PROC_SUFFIX_RE.search(name)
    return m.group(0) if m else ""


def copy_restart_files(parent: Run, child: Run) -> TransferReport:
    report = TransferReport(kind="checkpoint")
    files = list_restart_files(parent)
    child.restart_file = f"{child.run_name}.nc"
    child.restart_dir = RESTART_DIR
    if not files:
        log.warning("no checkpoint files found for run %s in %s; restart %s gets none",
                    parent.id, parent.directory, child.run_name)
        return report

    dest_dir = ensure_dir(child.directory / RESTART_DIR)
    try:
        for index, rel in enumerate(files, start=1):
            dest = dest_dir / f"{child.restart_file}{proc_suffix(rel)}"
            shutil.copy2(parent.directory / rel, dest)
            report.copied.append(dest)
            log.debug("checkpoint %d/%d: %s -> %s", index, len(files), rel, dest)
    except OSError:
        discard(report)
        raise
    log.info("copied %d checkpoint files from run %s to %s", report.count, parent.id, child.run_name)
    return report


def copy_response_files(parent: Run, child: Run) -> TransferReport:
    report = TransferReport(kind="response")
    files = list_response_files(parent)
    child.response_dir = RESPONSE_DIR
    if not files:
        log.warning("no response files found for run %s in %s", parent.id, parent.directory)
        return report

    dest_dir = ensure_dir(child.directory / RESPONSE_DIR)
    try:
        for rel in files:
            m = RESPONSE_TAG_RE.search(rel)
            if not m:
                log.warning("response file %s has no _ik_N_is_M tag; skipped", rel)
                continue
            dest = dest_dir / f"{child.run_name}{m.group(0)}"
            shutil.copy2(parent.directory / rel, dest)
            report.copied.append(dest)
    except OSError:
        discard(report)
        raise
    log.info("copied %d response files from run %s to %s", report.count, parent.id, child.run_name)
    return report


def discard(report: TransferReport) -> None:
    """Remove the files a transfer copied; used to roll back a failed restart."""
    for path in report.copied:
        path.unlink(missing_ok=True)
    log.info("removed %d %s files after a failed transfer", report.count, report.kind)
    report.copied.clear()


def standardize_restart_files(run: Run) -> List[Path]:
    """Move the run's checkpoint files to nc/<run_name>.nc<suffix>."""
    moved: List[Path] = []
    files = list_restart_files(run)
    dest_dir = ensure_dir(run.directory / RESTART_DIR)
    for rel in files:
        dest = dest_dir / f"{run.run_name}.nc{proc_suffix(rel)}"
        src = run.directory / rel
        if src.resolve() == dest.resolve():
            continue
        shutil.move(str(src), str(dest))
        moved.append(dest)
    run.restart_dir = RESTART_DIR
    run.restart_file = f"{run.run_name}.nc"
    return moved


def delete_restart_files(run: Run) -> List[Path]:
    """Remove every discovered checkpoint file. Irreversible."""
    removed: List[Path] = []
    for rel in list_restart_files(run):
        path = run.directory / rel
        path.unlink()
        removed.append(path)
    if removed:
        log.warning("deleted %d checkpoint files of run %s", len(removed), run.id)
    return removed
