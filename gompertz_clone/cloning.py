"""
Maximum likelihood by data cloning.

For each replication level K the model is rebuilt with K copies of the
series sharing one parameter draw. As K grows the posterior concentrates
on the MLE, and K times the posterior covariance approaches the
asymptotic covariance of the MLE (Lele et al. 2007, 2010).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import arviz as az
import numpy as np
import pandas as pd
from pymc.exceptions import SamplingError

from .config import RunConfig
from .errors import NumericDegeneracyError, ResourceExhaustionError
from .gapfill import ObservationSeries
from .model import GompertzParameters, build_model, initial_values, sampled_names, start_from
from .sampling import chain_draws, pooled_draws, sample_model

logger = logging.getLogger(__name__)

# |c| closer than this to 1 counts as hitting the stationarity boundary
BOUNDARY_EPS = 1e-6


@dataclass
class PosteriorSummary:
    """Pooled posterior mean and covariance at one replication level."""

    k: int
    names: Tuple[str, ...]
    mean: np.ndarray
    cov: np.ndarray
    rhat: Dict[str, float]
    ess: Dict[str, float]
    n_draws: int
    fixed: Dict[str, float] = field(default_factory=dict)

    @property
    def mle_cov(self) -> np.ndarray:
        """Asymptotic covariance of the MLE: K times the cloned posterior covariance."""
        return self.k * self.cov

    @property
    def standard_errors(self) -> pd.Series:
        return pd.Series(np.sqrt(np.diag(self.mle_cov)), index=list(self.names))

    @property
    def finite(self) -> bool:
        return bool(np.all(np.isfinite(self.mean)) and np.all(np.isfinite(self.cov)))

    def value(self, name: str) -> float:
        if name in self.names:
            return float(self.mean[self.names.index(name)])
        return float(self.fixed[name])

    def estimate(self) -> GompertzParameters:
        values = {n: self.value(n) for n in ("a", "c", "sigma")}
        return start_from(values)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "parameter": list(self.names),
            "estimate": self.mean,
            "std_error": self.standard_errors.to_numpy(),
            "posterior_sd": np.sqrt(np.diag(self.cov)),
            "rhat": [self.rhat[n] for n in self.names],
            "ess": [self.ess[n] for n in self.names],
            "k": self.k,
        })

    def cov_frame(self) -> pd.DataFrame:
        """Long format: one row per (row, col) pair, cloned posterior and MLE covariance."""
        names = list(self.names)
        rows, cols = np.meshgrid(names, names, indexing="ij")
        return pd.DataFrame({
            "row": rows.ravel(),
            "col": cols.ravel(),
            "cov": self.cov.ravel(),
            "mle_cov": self.mle_cov.ravel(),
            "k": self.k,
        })


@dataclass
class CloningRun:
    """Outcome of one replication level: retained draws and summary, or the failure."""

    k: int
    posterior: Optional[object] = None
    summary: Optional[PosteriorSummary] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.summary is None


def summarize(posterior, names, k: int, fixed: Optional[Dict[str, float]] = None) -> PosteriorSummary:
    draws = pooled_draws(posterior, names)
    cov = np.atleast_2d(np.cov(draws, rowvar=False))
    rhat, ess = {}, {}
    for name in names:
        chains = chain_draws(posterior, name)
        rhat[name] = float(az.rhat(chains))
        ess[name] = float(az.ess(chains))
    return PosteriorSummary(
        k=k,
        names=tuple(names),
        mean=draws.mean(axis=0),
        cov=cov,
        rhat=rhat,
        ess=ess,
        n_draws=draws.shape[0],
        fixed=dict(fixed or {}),
    )


def check_degeneracy(posterior, names, k: int, start: GompertzParameters) -> None:
    """Raise NumericDegeneracyError if draws are non-finite or |c| reaches 1."""
    draws = pooled_draws(posterior, names)
    if not np.all(np.isfinite(draws)):
        raise NumericDegeneracyError(k, "non-finite parameter draws")

    c = draws[:, names.index("c")] if "c" in names else np.full(len(draws), start.c)
    sigma = draws[:, names.index("sigma")] if "sigma" in names else np.full(len(draws), start.sigma)
    if np.any(np.abs(c) >= 1.0 - BOUNDARY_EPS):
        raise NumericDegeneracyError(k, f"c reached the stationarity boundary (max |c|={np.abs(c).max():.8f})")
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        stat_var = sigma ** 2 / (1.0 - c ** 2)
    if not np.all(np.isfinite(stat_var)):
        raise NumericDegeneracyError(k, "non-finite stationary variance")


def run_clone_level(
    series: ObservationSeries,
    k: int,
    config: RunConfig,
    start: GompertzParameters,
) -> CloningRun:
    """Sample the K-clone model; raises NumericDegeneracyError on degenerate output."""
    names = list(sampled_names(config.parameters))
    fixed = {n: start.value(n) for n in ("a", "c", "sigma") if n not in names}

    model = build_model(series, k, start, parameters=config.parameters)
    try:
        posterior = sample_model(
            model, config, seed=config.seed_for(k),
            initvals=initial_values(start, config.parameters),
            var_names=names,
        )
    except (SamplingError, FloatingPointError) as e:
        raise NumericDegeneracyError(k, str(e)) from e

    check_degeneracy(posterior, names, k, start)
    summary = summarize(posterior, names, k, fixed=fixed)
    if not summary.finite:
        raise NumericDegeneracyError(k, "non-finite posterior summary")
    return CloningRun(k=k, posterior=posterior, summary=summary)


def estimate(
    series: ObservationSeries,
    config: RunConfig,
    start: GompertzParameters,
) -> List[CloningRun]:
    """
    Run every replication level in ascending K.

    A degenerate level is recorded as failed and the ladder moves on.
    """
    runs = []
    for k in config.ladder:
        try:
            run = run_clone_level(series, k, config, start)
            s = run.summary
            logger.info("%s K=%d: %s", series.key, k, ", ".join(
                f"{n}={m:.4f} (sd {sd:.4f}, rhat {s.rhat[n]:.3f})"
                for n, m, sd in zip(s.names, s.mean, np.sqrt(np.diag(s.cov)))
            ))
        except NumericDegeneracyError as e:
            logger.warning("%s: %s", series.key, e)
            run = CloningRun(k=k, error=str(e))
        runs.append(run)
    return runs


def accepted_summary(runs: List[CloningRun]) -> PosteriorSummary:
    """Summary of the largest K with a finite result."""
    ok = [r for r in runs if not r.failed]
    if not ok:
        errors = "; ".join(r.error or "" for r in runs)
        raise ResourceExhaustionError(f"no replication level produced a finite summary ({errors})")
    return max(ok, key=lambda r: r.k).summary
