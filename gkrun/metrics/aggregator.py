# gkrun/metrics/aggregator.py
"""
ResultAggregator — derived metrics for a Complete run.

Dispatch is on the run's NonlinearMode:

  OFF (linear eigenvalue run)
    growth rate / real frequency per (ky, kx) mode, either read from the
    'omega_average' output or fitted from 'phi2_by_mode'; fastest growing
    mode; transient amplification per mode.

  ON (nonlinear turbulence run)
    saturation time index from the 'phi2' trend, then time-averaged fluxes
    over the saturated window (mean / standard error / std dev), then two
    best-effort diagnostics: spectrum check and velocity-space check.

Every sub-computation goes through kernels.attempt(): a failure is logged
and leaves its results unset, it never stops the other metrics. The
aggregator itself only raises for calls on runs that are not Complete.

Results are rebuilt from scratch on each call, so re-running on the same
store yields the same mapping.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import numpy as np

from gkrun.config import AnalysisConfig
from gkrun.errors import MissingVariableError
from gkrun.metrics import kernels
from gkrun.probe.cache import TimeSeriesCache
from gkrun.runs.model import NonlinearMode, Run, Status

log = logging.getLogger(__name__)

Window = Optional[Tuple[int, int]]  # inclusive 1-based time indices

# (store variable, result prefix)
SCALAR_FLUXES = (("hflux_tot", "hflux_tot"), ("phi2", "phi2_tot"))
SPECIES_FLUXES = ("es_heat_flux", "es_part_flux", "es_mom_flux")


def _float(x: Any) -> Optional[float]:
    return None if x is None else float(x)


def _window_slice(window: Window) -> slice:
    if window is None:
        return slice(None)
    start, end = window
    return slice(max(int(start) - 1, 0), int(end))


class ResultAggregator:
    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def compute_results(self, run: Run, cache: TimeSeriesCache) -> bool:
        """
        Replace run.results with freshly derived metrics.

        Returns False (and leaves run.results untouched) when analysis is
        disabled by configuration.
        """
        if self.config.analysis_disabled:
            log.info("analysis disabled; skipping results for run %s", run.id)
            return False
        if run.status is not Status.COMPLETE:
            raise ValueError(f"compute_results: run {run.id} is {run.status.value}, not Complete")

        log.info("analysing run %s (%s)", run.id, run.run_name)
        run.results = self.evaluate(run, cache)
        return True

    def evaluate(self, run: Run, cache: TimeSeriesCache, window: Window = None) -> Dict[str, Any]:
        """Derived metrics of `run`, optionally restricted to a time-index window."""
        results: Dict[str, Any] = {}
        if run.nonlinear_mode is NonlinearMode.OFF:
            self._linear(run, cache, window, results)
        elif run.nonlinear_mode is NonlinearMode.ON:
            self._nonlinear(run, cache, window, results)
        else:
            log.warning("run %s has no nonlinear_mode; no metrics derived", run.id)
        results.setdefault("growth_rates", {})
        results.setdefault("real_frequencies", {})
        return results

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _keep(self, run: Run, diag: kernels.DiagnosticResult, results: Dict[str, Any]) -> None:
        if diag.ok:
            if diag.value:
                results.update(diag.value)
        else:
            log.warning("run %s: %s not computed: %s", run.id, diag.name, diag.error)

    @staticmethod
    def _required(cache: TimeSeriesCache, name: str) -> np.ndarray:
        arr = cache.array(name)
        if arr is None:
            raise MissingVariableError(f"{cache.run.netcdf_path.name}: no variable {name!r}")
        return np.asarray(arr)

    @staticmethod
    def _optional(cache: TimeSeriesCache, name: str) -> Optional[np.ndarray]:
        arr = cache.array(name)
        return None if arr is None else np.asarray(arr)

    # ------------------------------------------------------------------
    # Linear
    # ------------------------------------------------------------------

    def _linear(self, run: Run, cache: TimeSeriesCache, window: Window, results: Dict[str, Any]) -> None:
        sl = _window_slice(window)
        self._keep(run, kernels.attempt("growth_rates", self._growth_rates, cache, sl), results)
        self._keep(run, kernels.attempt("transient_amplification", self._transients, cache, sl), results)

    def _growth_rates(self, cache: TimeSeriesCache, sl: slice) -> Dict[str, Any]:
        omega = self._optional(cache, "omega_average")
        if omega is not None:
            freq, gamma = kernels.omega_at_final_time(omega[sl])
        else:
            t = self._required(cache, "t")[sl]
            phi2 = self._required(cache, "phi2_by_mode")[sl]
            gamma = kernels.mode_growth_rates(t, phi2, self.config.growth_fit_fraction)
            freq = np.full(gamma.shape, np.nan)

        ky = self._optional(cache, "ky")
        by_mode: Dict[int, Dict[int, float]] = {}
        growth_rates: Dict[int, float] = {}
        real_frequencies: Dict[int, float] = {}
        for iky in range(gamma.shape[0]):
            row = gamma[iky]
            by_mode[iky + 1] = {ikx + 1: float(g) for ikx, g in enumerate(row) if np.isfinite(g)}
            if np.any(np.isfinite(row)):
                growth_rates[iky + 1] = float(np.nanmean(row))
            if np.any(np.isfinite(freq[iky])):
                real_frequencies[iky + 1] = float(np.nanmean(freq[iky]))

        out: Dict[str, Any] = {
            "growth_rate_at_ky_at_kx": by_mode,
            "growth_rates": growth_rates,
            "real_frequencies": real_frequencies,
        }
        if growth_rates:
            fastest = max(growth_rates, key=lambda k: (growth_rates[k], -k))
            out["max_growth_rate"] = growth_rates[fastest]
            out["fastest_growing_mode"] = float(ky[fastest - 1]) if ky is not None and ky.size >= fastest else fastest
            out["freq_of_max_growth_rate"] = real_frequencies.get(fastest)
        return out

    def _transients(self, cache: TimeSeriesCache, sl: slice) -> Dict[str, Any]:
        phi2 = self._optional(cache, "phi2_by_mode")
        if phi2 is None:
            return {}
        amp, t_index = kernels.transient_amplification(phi2[sl])
        offset = (sl.start or 0)
        by_mode: Dict[int, Dict[int, float]] = {}
        at_ky: Dict[int, float] = {}
        index_at_ky: Dict[int, int] = {}
        for iky in range(amp.shape[0]):
            row = amp[iky]
            by_mode[iky + 1] = {ikx + 1: float(a) for ikx, a in enumerate(row) if np.isfinite(a)}
            if np.any(np.isfinite(row)):
                ikx = int(np.nanargmax(row))
                at_ky[iky + 1] = float(row[ikx])
                index_at_ky[iky + 1] = int(t_index[iky, ikx]) + offset
        return {
            "transient_amplification_at_ky_at_kx": by_mode,
            "transient_amplification_at_ky": at_ky,
            "max_transient_amplification_index_at_ky": index_at_ky,
        }

    # ------------------------------------------------------------------
    # Nonlinear
    # ------------------------------------------------------------------

    def _nonlinear(self, run: Run, cache: TimeSeriesCache, window: Window, results: Dict[str, Any]) -> None:
        sl = _window_slice(window)
        offset = sl.start or 0

        sat = kernels.attempt("saturation_time_index", self._saturation, cache, sl)
        self._keep(run, sat, results)
        sat_index = results.get("saturation_time_index")

        window_diag = kernels.attempt("averaging_window", self._average_slice, cache, sl, sat_index, offset)
        if not window_diag.ok:
            log.warning("run %s: no averaging window: %s", run.id, window_diag.error)
            return
        avg = window_diag.value
        for name, prefix in SCALAR_FLUXES:
            self._keep(run, kernels.attempt(f"{prefix}_stav", self._scalar_average, cache, name, prefix, avg), results)
        for name in SPECIES_FLUXES:
            self._keep(run, kernels.attempt(f"{name}_stav", self._species_average, cache, name, avg), results)

        # best-effort diagnostics
        self._keep(run, kernels.attempt("spectrum_check", self._spectrum_check, cache, avg), results)
        self._keep(run, kernels.attempt("vspace_check", self._vspace_check, cache, avg), results)

    def _saturation(self, cache: TimeSeriesCache, sl: slice) -> Dict[str, Any]:
        t = self._required(cache, "t")[sl]
        phi2 = self._required(cache, "phi2")[sl]
        cfg = self.config
        index = kernels.saturation_index(
            t, phi2, cfg.saturation_window, cfg.saturation_slope_threshold, cfg.saturation_min_windows
        )
        if index is None:
            return {"saturated": False}
        return {"saturated": True, "saturation_time_index": index + (sl.start or 0)}

    def _average_slice(self, cache: TimeSeriesCache, sl: slice, sat_index: Optional[int], offset: int) -> slice:
        stop = sl.stop
        if sat_index is not None:
            return slice(sat_index - 1, stop)
        # never saturated: average the final half of the window
        t = cache.array("t")
        n = (len(t) if t is not None else 0)
        end = n if stop is None else min(stop, n)
        length = max(end - offset, 0)
        return slice(offset + length // 2, end)

    def _scalar_average(self, cache: TimeSeriesCache, name: str, prefix: str, avg: slice) -> Dict[str, Any]:
        arr = self._optional(cache, name)
        if arr is None:
            return {}
        stats = kernels.time_average(arr[avg])
        return {
            f"{prefix}_stav": _float(stats["mean"]),
            f"{prefix}_stav_error": _float(stats["error"]),
            f"{prefix}_stav_std_dev": _float(stats["std_dev"]),
        }

    def _species_average(self, cache: TimeSeriesCache, name: str, avg: slice) -> Dict[str, Any]:
        arr = self._optional(cache, name)
        if arr is None:
            return {}
        stats = kernels.time_average(arr[avg])
        out: Dict[str, Any] = {}
        for key, suffix in (("mean", "_stav"), ("error", "_stav_error"), ("std_dev", "_stav_std_dev")):
            values = np.atleast_1d(stats[key])
            out[name + suffix] = {i + 1: float(v) for i, v in enumerate(values)}
        return out

    def _spectrum_check(self, cache: TimeSeriesCache, avg: slice) -> Dict[str, Any]:
        ratio = self.config.spectrum_tail_ratio
        ky_spec = np.nanmean(self._required(cache, "phi2_by_ky")[avg], axis=0)
        kx_spec = np.nanmean(self._required(cache, "phi2_by_kx")[avg], axis=0)
        ky_idx, ky_peak = kernels.spectrum_peak(ky_spec)
        kx_idx, kx_peak = kernels.spectrum_peak(kx_spec)
        out: Dict[str, Any] = {
            "spectrum_check": [kernels.spectrum_tail_flag(ky_spec, ratio), kernels.spectrum_tail_flag(kx_spec, ratio)],
            "ky_spectrum_peak_idx": ky_idx,
            "ky_spectrum_peak_phi2": ky_peak,
            "kx_spectrum_peak_phi2": kx_peak,
        }
        ky = self._optional(cache, "ky")
        kx = self._optional(cache, "kx")
        if ky is not None:
            out["ky_spectrum_peak_ky"] = float(ky[ky_idx - 1])
        if kx is not None:
            out["kx_spectrum_peak_kx"] = float(kx[kx_idx - 1])
        return out

    def _vspace_check(self, cache: TimeSeriesCache, avg: slice) -> Dict[str, Any]:
        arr = self._required(cache, "vspace_lpcfrac")[avg]
        if arr.size == 0:
            raise ValueError("empty velocity-space window")
        means = np.atleast_1d(np.nanmean(arr, axis=0))
        return {"vspace_check": [float(v) for v in means]}
