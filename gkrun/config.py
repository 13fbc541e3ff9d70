# gkrun/config.py
"""
Environment-driven settings for the analysis pipeline.

Nothing here is read from files: every knob comes from GKRUN_* environment
variables, with defaults that match what the pipeline used before they were
configurable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

_TRUE = ("1", "true", "yes", "on")


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in _TRUE


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class AnalysisConfig:
    analysis_disabled: bool = False        # classify only, skip compute_results
    saturation_window: int = 10            # samples per log(phi2) trend fit
    saturation_slope_threshold: float = 0.05
    saturation_min_windows: int = 3        # consecutive flat windows needed
    growth_fit_fraction: float = 0.5       # fit growth rates over the last half
    spectrum_tail_ratio: float = 0.1       # tail/peak above this flags the spectrum
    database_url: Optional[str] = None     # ledger mirror off when None
    workers: int = 4

    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        dsn = os.getenv("GKRUN_DATABASE_URL") or os.getenv("PGDSN")
        return cls(
            analysis_disabled=_env_flag("GKRUN_NO_ANALYSIS"),
            saturation_window=_env_int("GKRUN_SAT_WINDOW", cls.saturation_window),
            saturation_slope_threshold=_env_float("GKRUN_SAT_SLOPE", cls.saturation_slope_threshold),
            saturation_min_windows=_env_int("GKRUN_SAT_MIN_WINDOWS", cls.saturation_min_windows),
            growth_fit_fraction=_env_float("GKRUN_GROWTH_FIT_FRACTION", cls.growth_fit_fraction),
            spectrum_tail_ratio=_env_float("GKRUN_SPECTRUM_TAIL_RATIO", cls.spectrum_tail_ratio),
            database_url=dsn or None,
            workers=_env_int("GKRUN_WORKERS", cls.workers),
        )

    def validate(self) -> None:
        """Raise ValueError when the settings cannot drive the analysis."""
        errs = []
        if self.saturation_window < 2:
            errs.append(f"saturation_window must be >= 2 (got {self.saturation_window})")
        if self.saturation_min_windows < 1:
            errs.append(f"saturation_min_windows must be >= 1 (got {self.saturation_min_windows})")
        if self.saturation_slope_threshold < 0.0:
            errs.append(f"saturation_slope_threshold must be >= 0 (got {self.saturation_slope_threshold})")
        if not 0.0 < self.growth_fit_fraction <= 1.0:
            errs.append(f"growth_fit_fraction must be in (0, 1] (got {self.growth_fit_fraction})")
        if self.workers < 1:
            errs.append(f"workers must be >= 1 (got {self.workers})")
        if errs:
            raise ValueError("; ".join(errs))
