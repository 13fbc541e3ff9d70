import hashlib
import json
from pathlib import Path
from typing import Iterable

from datetime import date, datetime
from decimal import Decimal

def _json_default(o):
    """Fallback serializer for hash_json — handles datetime, Path, Decimal, etc."""
    if isinstance(o, (datetime, date)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return float(o)
    if isinstance(o, Path):
        return str(o)
    # final fallback: string form
    return str(o)

def hash_json(obj, *, sort_keys: bool = True, separators=(",", ":"), encoding: str = "utf-8") -> str:
    """
    Stable SHA-256 over a canonical JSON representation of `obj`.
    - sort_keys=True for deterministic key order
    - separators without spaces to avoid whitespace variance
    """
    s = json.dumps(
        obj,
        sort_keys=sort_keys,
        separators=separators,
        ensure_ascii=False,
        default=_json_default,
    )
    return hashlib.sha256(s.encode(encoding)).hexdigest()

def artifact_fingerprint(paths: Iterable[Path]) -> str:
    """
    Hash of (name, size, mtime_ns) for each path; absent files hash as None.

    Cheap enough to take on every pass: it never opens the files, so a
    terminal run whose log/store are untouched can skip re-analysis.
    """
    facts = []
    for p in paths:
        p = Path(p)
        try:
            st = p.stat()
            facts.append([p.name, st.st_size, st.st_mtime_ns])
        except FileNotFoundError:
            facts.append([p.name, None, None])
    return hash_json(facts)
