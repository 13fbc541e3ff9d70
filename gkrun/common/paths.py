# gkrun/common/paths.py
"""
Filesystem helpers scoped to one run directory.

The working directory is process-global, so working_directory() serialises
all chdir scopes in the process behind one lock. Worker threads that only
need absolute paths should not enter it.
"""

from __future__ import annotations

import os
import threading
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Union

_CWD_LOCK = threading.RLock()


@contextmanager
def working_directory(path: Union[str, Path]) -> Iterator[Path]:
    """Change into `path` for the duration of the block; always change back."""
    target = Path(path)
    with _CWD_LOCK:
        previous = os.getcwd()
        os.chdir(target)
        try:
            yield target
        finally:
            os.chdir(previous)


def tail_lines(path: Union[str, Path], n: int) -> List[str]:
    """
    Last `n` lines of a text file (without newlines). Missing file -> [].

    Streams the file once, keeping only `n` lines, so the cost is bounded
    by the window rather than the size of a log that may still be growing.
    """
    p = Path(path)
    if n <= 0 or not p.is_file():
        return []
    with p.open("r", encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\r\n") for line in deque(f, maxlen=n)]


def tail_text(path: Union[str, Path], n: int) -> str:
    return "\n".join(tail_lines(path, n))


def ensure_dir(path: Union[str, Path]) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p
