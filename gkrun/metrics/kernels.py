# gkrun/metrics/kernels.py
"""
Numeric kernels behind the result aggregator (numpy only).

Conventions:
  - time axes are 1-D float arrays, already cut to the analysis window
  - mode-resolved arrays are indexed [t, ky, kx] like the binary store
  - returned indices are 1-based (store convention), elements 0-based
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

_TINY = 1e-300


@dataclass(frozen=True)
class DiagnosticResult:
    """Outcome of a best-effort computation: a value, or the error that stopped it."""
    name: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt(name: str, fn: Callable[..., Any], *args, **kwargs) -> DiagnosticResult:
    """Run a diagnostic and capture any failure in the result instead of raising."""
    try:
        return DiagnosticResult(name=name, value=fn(*args, **kwargs))
    except Exception as e:
        return DiagnosticResult(name=name, error=e)


# ---------------------------------------------------------------------------
# Linear runs
# ---------------------------------------------------------------------------

def fit_growth_rate(t: np.ndarray, amplitude2: np.ndarray, fraction: float = 0.5) -> Optional[float]:
    """
    Growth rate from |phi|^2(t): slope of 0.5*log(phi2) vs t over the final
    `fraction` of the samples. None when fewer than two usable samples remain.
    """
    t = np.asarray(t, dtype=float)
    a = np.asarray(amplitude2, dtype=float)
    n = min(t.size, a.size)
    if n < 2:
        return None
    start = min(n - 2, int(math.floor(n * (1.0 - fraction))))
    tt = t[start:n]
    aa = a[start:n]
    keep = np.isfinite(tt) & np.isfinite(aa) & (aa > 0.0)
    if np.count_nonzero(keep) < 2 or np.ptp(tt[keep]) == 0.0:
        return None
    slope, _ = np.polyfit(tt[keep], 0.5 * np.log(aa[keep]), 1)
    return float(slope)


def mode_growth_rates(t: np.ndarray, phi2_by_mode: np.ndarray, fraction: float = 0.5) -> np.ndarray:
    """Growth rate per (ky, kx) mode; NaN where a fit is impossible."""
    arr = np.asarray(phi2_by_mode, dtype=float)
    if arr.ndim == 1:
        arr = arr[:, None, None]
    elif arr.ndim == 2:
        arr = arr[:, :, None]
    out = np.full(arr.shape[1:], np.nan)
    for iky in range(arr.shape[1]):
        for ikx in range(arr.shape[2]):
            g = fit_growth_rate(t, arr[:, iky, ikx], fraction)
            if g is not None:
                out[iky, ikx] = g
    return out


def omega_at_final_time(omega: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split `omega_average` [t, ky, kx, ri] at the last finite time into
    (real frequency, growth rate) arrays of shape [ky, kx].
    """
    arr = np.asarray(omega, dtype=float)
    if arr.ndim != 4 or arr.shape[-1] != 2:
        raise ValueError(f"omega_average must be [t, ky, kx, ri], got shape {arr.shape}")
    for it in range(arr.shape[0] - 1, -1, -1):
        if np.all(np.isfinite(arr[it])):
            return arr[it, :, :, 0], arr[it, :, :, 1]
    raise ValueError("omega_average has no finite time slice")


def transient_amplification(phi2_by_mode: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Per mode: max_t phi2 / phi2(first sample), and the 1-based time index of
    the maximum. Modes starting at zero amplitude give NaN.
    """
    arr = np.asarray(phi2_by_mode, dtype=float)
    if arr.ndim == 1:
        arr = arr[:, None, None]
    elif arr.ndim == 2:
        arr = arr[:, :, None]
    first = arr[0]
    peak = np.nanmax(arr, axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        amp = np.where(first > 0.0, peak / first, np.nan)
    return amp, np.nanargmax(arr, axis=0) + 1


# ---------------------------------------------------------------------------
# Nonlinear runs
# ---------------------------------------------------------------------------

def saturation_index(
    t: np.ndarray,
    energy: np.ndarray,
    window: int,
    slope_threshold: float,
    min_windows: int,
) -> Optional[int]:
    """
    First 1-based index from which `min_windows` consecutive windows of
    `window` samples have a log(energy) trend with |slope| <= slope_threshold.
    None if the run never settles.
    """
    t = np.asarray(t, dtype=float)
    e = np.log(np.maximum(np.asarray(energy, dtype=float), _TINY))
    n = min(t.size, e.size)
    if window < 2 or n < window:
        return None
    flat_run = 0
    for start in range(0, n - window + 1):
        tt = t[start:start + window]
        if np.ptp(tt) == 0.0:
            flat_run = 0
            continue
        slope, _ = np.polyfit(tt, e[start:start + window], 1)
        if abs(slope) <= slope_threshold:
            flat_run += 1
            if flat_run >= min_windows:
                return start - min_windows + 2
        else:
            flat_run = 0
    return None


def time_average(values: np.ndarray) -> Dict[str, float]:
    """Mean, standard error and standard deviation over axis 0."""
    v = np.asarray(values, dtype=float)
    n = v.shape[0] if v.ndim else 0
    if n == 0:
        raise ValueError("empty averaging window")
    mean = np.nanmean(v, axis=0)
    std = np.nanstd(v, axis=0)
    return {"mean": mean, "error": std / math.sqrt(n), "std_dev": std}


def spectrum_peak(spectrum: np.ndarray) -> Tuple[int, float]:
    """(1-based index, value) of the largest entry of a 1-D spectrum."""
    s = np.asarray(spectrum, dtype=float)
    if s.ndim != 1 or s.size == 0:
        raise ValueError(f"spectrum must be a non-empty 1-D array, got shape {s.shape}")
    element = int(np.nanargmax(s))
    return element + 1, float(s[element])


def spectrum_tail_flag(spectrum: np.ndarray, ratio: float) -> int:
    """1 when the highest-wavenumber entry exceeds `ratio` of the peak (under-resolved)."""
    _, peak = spectrum_peak(spectrum)
    if peak <= 0.0:
        raise ValueError("spectrum has no positive entries")
    tail = float(np.asarray(spectrum, dtype=float)[-1])
    return int(tail / peak > ratio)
