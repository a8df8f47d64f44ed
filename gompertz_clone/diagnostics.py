"""
Convergence and identifiability diagnostics across a cloning ladder.

Per replication level K:
  - rhat, ess and posterior variance per parameter
  - lambda_max: largest eigenvalue of the posterior covariance; shrinks
    like 1/K for an identifiable model
  - ms_error, r_squared: agreement of squared Mahalanobis distances of the
    pooled draws with chi-square quantiles. The cloned posterior tends to
    a normal, so these tend to 0 and 1 as K grows.

Per parameter, across the ladder: slope of log posterior variance against
log K (about -1 when the posterior contracts) and the non-identifiability
flag.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .cloning import CloningRun
from .config import RunConfig
from .model import regularize_cov, sampled_names
from .sampling import pooled_draws

logger = logging.getLogger(__name__)

VARIANCE_FLOOR = 1e-300


@dataclass
class LadderDiagnostics:
    table: pd.DataFrame         # one row per K, ascending
    parameters: pd.DataFrame    # one row per estimated parameter

    @property
    def non_identifiable(self) -> List[str]:
        p = self.parameters
        return p.loc[p["non_identifiable"], "parameter"].tolist()

    @property
    def failed_k(self) -> List[int]:
        return self.table.loc[self.table["failed"], "k"].tolist()

    @property
    def converged(self) -> bool:
        return not self.non_identifiable and bool((~self.table["failed"]).any())


def lambda_max(cov) -> float:
    return float(np.linalg.eigvalsh(np.atleast_2d(cov)).max())


def chisq_diagnostics(draws: np.ndarray) -> Tuple[float, float]:
    """Mean squared error and R^2 of Mahalanobis distances against chi-square quantiles."""
    draws = np.asarray(draws, dtype=float)
    if draws.ndim == 1:
        draws = draws[:, None]
    n, p = draws.shape
    centred = draws - draws.mean(axis=0)
    prec = np.linalg.inv(regularize_cov(np.cov(draws, rowvar=False)))
    d2 = np.sort(np.einsum("ij,jk,ik->i", centred, prec, centred))
    q = stats.chi2.ppf((np.arange(1, n + 1) - 0.5) / n, df=p)
    ms_error = float(np.mean((d2 - q) ** 2))
    r_squared = float(np.corrcoef(d2, q)[0, 1] ** 2)
    return ms_error, r_squared


def contraction_slope(ks: Sequence[int], variances: Sequence[float]) -> float:
    """Least-squares slope of log(variance) on log(K); NaN with fewer than two levels."""
    ks = np.asarray(ks, dtype=float)
    v = np.asarray(variances, dtype=float)
    ok = np.isfinite(v) & np.isfinite(ks)
    if ok.sum() < 2 or np.unique(ks[ok]).size < 2:
        return np.nan
    slope, _ = np.polyfit(np.log(ks[ok]), np.log(np.maximum(v[ok], VARIANCE_FLOOR)), 1)
    return float(slope)


def is_non_identifiable(
    ks: Sequence[int],
    variances: Sequence[float],
    rhats: Sequence[float],
    rhat_tolerance: float = 0.1,
    slope_threshold: float = -0.5,
) -> bool:
    """
    Flag a parameter whose posterior does not contract with K, or whose
    convergence ratio stays away from 1 at every level.

    Either condition alone flags the parameter: a variance plateau across K
    already means the likelihood is flat in that direction, even when the
    chains mix well.
    """
    slope = contraction_slope(ks, variances)
    contracts = np.isfinite(slope) and slope <= slope_threshold

    r = np.asarray(rhats, dtype=float)
    r = r[np.isfinite(r)]
    mixing_fails = r.size > 0 and bool(np.all(np.abs(r - 1.0) > rhat_tolerance))
    return (not contracts) or mixing_fails


def diagnose(runs: Sequence[CloningRun], config: RunConfig) -> LadderDiagnostics:
    """Per-K table and per-parameter identifiability over a ladder."""
    runs = sorted(runs, key=lambda r: r.k)
    ok = [r for r in runs if not r.failed]
    names = list(ok[0].summary.names) if ok else list(sampled_names(config.parameters))

    rows = []
    for run in runs:
        row = {"k": run.k, "failed": run.failed, "error": run.error}
        if not run.failed:
            s = run.summary
            var = np.diag(s.cov)
            ms_error, r_squared = chisq_diagnostics(pooled_draws(run.posterior, names))
            row.update({
                "n_draws": s.n_draws,
                "lambda_max": lambda_max(s.cov),
                "ms_error": ms_error,
                "r_squared": r_squared,
                "rhat_max": max(s.rhat.values()),
            })
            for i, name in enumerate(names):
                row[f"mean_{name}"] = s.mean[i]
                row[f"var_{name}"] = var[i]
                row[f"scaled_var_{name}"] = run.k * var[i]
                row[f"rhat_{name}"] = s.rhat[name]
        rows.append(row)
    table = pd.DataFrame(rows)
    if "failed" not in table:
        table = pd.DataFrame(columns=["k", "failed", "error"])
    table["failed"] = table["failed"].astype(bool)

    ks = [r.k for r in ok]
    prows = []
    for name in names:
        variances = [float(np.diag(r.summary.cov)[names.index(name)]) for r in ok]
        rhats = [r.summary.rhat[name] for r in ok]
        flag = is_non_identifiable(ks, variances, rhats,
                                   rhat_tolerance=config.rhat_tolerance,
                                   slope_threshold=config.contraction_slope)
        prows.append({
            "parameter": name,
            "rhat_final": rhats[-1] if rhats else np.nan,
            "var_first": variances[0] if variances else np.nan,
            "var_last": variances[-1] if variances else np.nan,
            "contraction_slope": contraction_slope(ks, variances),
            "non_identifiable": flag,
        })
        if flag:
            logger.warning("Parameter %s flagged as non-identifiable (slope=%.3f, rhat=%s)",
                           name, prows[-1]["contraction_slope"], rhats)
    parameters = pd.DataFrame(prows, columns=["parameter", "rhat_final", "var_first",
                                              "var_last", "contraction_slope", "non_identifiable"])
    parameters["non_identifiable"] = parameters["non_identifiable"].astype(bool)
    return LadderDiagnostics(table=table, parameters=parameters)
