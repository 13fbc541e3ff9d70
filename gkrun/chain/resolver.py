# gkrun/chain/resolver.py
"""
RestartChainResolver — the restart back-reference graph over a RunRegistry.

Runs point at the run they restarted from through `restart_id` (a plain id).
The graph is a forest of chains r0 -> r1 -> ... -> rk; every walk here is
bounded by the registry size and raises RestartChainError instead of looping.
"""

from __future__ import annotations

import copy
import logging
import re
import shutil
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from gkrun.chain import transfer
from gkrun.errors import RestartChainError, RestartConfigurationError
from gkrun.runs.model import RESTART_INHERITABLE, Run
from gkrun.runs.registry import RunRegistry

log = logging.getLogger(__name__)

# Parameters a restarted run must start with, whatever the parent used.
RESTART_PARAMETERS: Dict[str, Any] = {
    "ginit_option": "many",
    "delt_option": "check_restart",
}

# Free-form parameters that describe the parent's own restart bookkeeping.
NOT_INHERITED_PARAMETERS = ("restart_file", "restart_dir", "response_dir", "read_response")


@dataclass
class RestartReport:
    child: Run
    checkpoint: transfer.TransferReport
    response: Optional[transfer.TransferReport] = None


class RestartChainResolver:
    def __init__(self, registry: RunRegistry):
        self.registry = registry

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def root_of(self, run: Run) -> Run:
        current = run
        seen = {run.id}
        for _ in range(len(self.registry) + 1):
            if current.restart_id is None:
                return current
            parent = self.registry.get(current.restart_id)
            if parent is None:
                raise RestartChainError(
                    f"run {current.id} restarts from unknown run {current.restart_id}"
                )
            if parent.id in seen:
                raise RestartChainError(f"restart cycle through run {parent.id}")
            seen.add(parent.id)
            current = parent
        raise RestartChainError(f"restart chain of run {run.id} does not terminate")

    def restart_chain(self, run: Run) -> List[int]:
        """Ids from the chain's root forward to its most recent restart."""
        current = self.root_of(run)
        chain = [current.id]
        for _ in range(len(self.registry)):
            children = self.registry.children_of(current.id)
            if not children:
                return chain
            current = children[0]
            if current.id in chain:
                raise RestartChainError(f"restart cycle through run {current.id}")
            chain.append(current.id)
        if self.registry.children_of(current.id):
            raise RestartChainError(f"restart chain of run {run.id} does not terminate")
        return chain

    def no_restarts(self, run: Run) -> bool:
        """True when no registered run was restarted from `run`."""
        return not self.registry.children_of(run.id)

    def latest_in_chain(self, run: Run) -> Run:
        return self.registry.lookup(self.restart_chain(run)[-1])

    def _lineage(self, run: Run) -> List[int]:
        """Ids from `run` back to its chain root."""
        ids = [run.id]
        current = run
        while current.restart_id is not None:
            parent = self.registry.get(current.restart_id)
            if parent is None or parent.id in ids:
                break
            ids.append(parent.id)
            current = parent
        return ids

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_restart(self, parent: Run, child: Run) -> RestartReport:
        """
        Turn `child` into a restart of `parent`, copy checkpoints, register it.

        Fatal (RestartConfigurationError, nothing changed, nothing copied):
          - child.nprocs differs from parent.nprocs (checkpoint layout is per process)
          - child and parent are the same run, or child is an ancestor of parent

        The restart is prepared on a copy of `child`; `child` only takes the
        new configuration once every file is in place. A failed copy removes
        what was already copied and leaves `child` as it was.
        """
        if child.id == parent.id:
            raise RestartConfigurationError(f"run {parent.id} cannot restart from itself")
        if not child.nprocs or child.nprocs != parent.nprocs:
            raise RestartConfigurationError(
                "Restart must be on the same number of processors as the previous run: "
                f"new is {child.nprocs!r} and old is {parent.nprocs!r}"
            )
        if parent.id not in self.registry:
            raise RestartChainError(f"parent run {parent.id} is not registered")
        if child.id in self._lineage(parent):
            raise RestartConfigurationError(
                f"run {child.id} is an ancestor of run {parent.id} and cannot restart from it"
            )

        staged = copy.copy(child)
        staged.parameters = dict(child.parameters)
        for name in RESTART_INHERITABLE:
            if getattr(staged, name) is None and getattr(parent, name) is not None:
                setattr(staged, name, getattr(parent, name))
        for key, value in parent.parameters.items():
            if key not in NOT_INHERITED_PARAMETERS:
                staged.parameters.setdefault(key, value)
        staged.parameters.update(RESTART_PARAMETERS)

        staged.restart_id = parent.id
        staged.restart_run_name = parent.run_name
        staged.is_a_restart = True

        checkpoint = transfer.copy_restart_files(parent, staged)
        response = None
        if staged.read_response:
            staged.response_id = parent.id
            try:
                response = transfer.copy_response_files(parent, staged)
            except OSError:
                transfer.discard(checkpoint)
                raise

        for f in fields(Run):
            setattr(child, f.name, getattr(staged, f.name))
        self.registry.register(child)
        return RestartReport(child=child, checkpoint=checkpoint, response=response)

    def rename_run(self, run: Run, new_id: int) -> Run:
        """
        Give `run` a new id: file names, directory, run_name and every
        back-reference to it in the registry are updated together.

        Only the run directory's own name is rewritten, never its parents,
        and `id_1` never matches inside `id_12`.
        """
        old_id = run.id
        if new_id == old_id:
            return run
        if new_id in self.registry:
            raise RestartConfigurationError(f"id {new_id} already belongs to another run")

        token, new_token = id_token(old_id), f"id_{new_id}"
        _rename_entries(run.directory, token, new_token)
        if run.restart_dir:
            restart_dir = run.directory / run.restart_dir
            if restart_dir.is_dir():
                _rename_entries(restart_dir, token, new_token)
            else:
                log.info("run %s: no restart directory %s; skipping", old_id, restart_dir)

        new_directory = run.directory.with_name(token.sub(new_token, run.directory.name, count=1))
        if new_directory != run.directory:
            shutil.move(str(run.directory), str(new_directory))
            run.directory = new_directory

        run.run_name = token.sub(new_token, run.run_name)
        if run.restart_file:
            run.restart_file = token.sub(new_token, run.restart_file)

        descendants = [r for r in self.registry.runs()
                       if r.id != old_id and (r.restart_id == old_id or r.response_id == old_id)]
        if old_id in self.registry:
            self.registry.unregister(old_id)
        run.id = new_id
        self.registry.register(run)
        for other in descendants:
            if other.restart_id == old_id:
                other.restart_id = new_id
            if other.response_id == old_id:
                other.response_id = new_id
            self.registry.register(other)
        return run

    def delete_run(self, run: Run) -> List[Run]:
        """
        Drop `run` from the registry. Its direct restarts become chain roots;
        they keep restart_run_name so the provenance stays readable.
        """
        orphans = self.registry.children_of(run.id)
        self.registry.unregister(run.id)
        for child in orphans:
            child.restart_id = None
            if child.response_id == run.id:
                child.response_id = None
            self.registry.register(child)
            log.warning("run %s lost its restart parent %s", child.id, run.id)
        return orphans


def id_token(run_id: int) -> re.Pattern:
    """`id_<run_id>` as it appears in names, not followed by another digit."""
    return re.compile(rf"id_{run_id}(?!\d)")


def _rename_entries(directory: Path, token: re.Pattern, new_token: str) -> None:
    for entry in sorted(directory.iterdir()):
        if token.search(entry.name):
            entry.rename(entry.with_name(token.sub(new_token, entry.name)))
