"""
Stochastic Gompertz state-space model with Poisson counts.

Latent log-abundance follows a stationary AR(1):

    X[0] ~ Normal(a / (1 - c), sigma^2 / (1 - c^2))
    X[t] = a + c * X[t-1] + E[t],   E[t] ~ Normal(0, sigma^2)

and each observed step contributes Y[t] ~ Poisson(p * exp(X[t])), with
p = 1 unless the detection scale is estimated. Missing steps carry no
likelihood term; the latent chain still steps through them.

`build_model` instantiates the model for K clones of one series. All
clones share one parameter draw and have independent latent paths. The
same builder serves the trajectory pass (K=1) with a multivariate
normal prior in place of the vague priors.
"""

import logging
from dataclasses import dataclass
from functools import reduce
from typing import Optional, Sequence, Tuple

import numpy as np
import pymc as pm
import pytensor.tensor as pt

from .gapfill import ObservationSeries

logger = logging.getLogger(__name__)

# Fixed hyperparameters
PRIOR_A_MU = 0.0
PRIOR_A_SD = 5.0
PRIOR_LOG_SIGMA_MU = np.log(0.5)
PRIOR_LOG_SIGMA_SD = 1.0

COV_EIGEN_FLOOR = 1e-10


@dataclass(frozen=True)
class GompertzParameters:
    """Growth rate a, density dependence c (|c| < 1), process variance sigma2."""

    a: float
    c: float
    sigma2: float

    def __post_init__(self):
        if not -1.0 < self.c < 1.0:
            raise ValueError(f"c must lie in (-1, 1) for stationarity, got {self.c}")
        if not self.sigma2 > 0:
            raise ValueError(f"sigma2 must be positive, got {self.sigma2}")

    @property
    def sigma(self) -> float:
        return float(np.sqrt(self.sigma2))

    @property
    def stationary_mean(self) -> float:
        return self.a / (1.0 - self.c)

    @property
    def stationary_var(self) -> float:
        return self.sigma2 / (1.0 - self.c ** 2)

    def value(self, name: str) -> float:
        if name == "sigma":
            return self.sigma
        return float(getattr(self, name))


def simulate(
    params: GompertzParameters,
    n_steps: int,
    rng=None,
    missing: Sequence[int] = (),
    detection: float = 1.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Draw a latent path and Poisson counts; `missing` steps are set to NaN."""
    rng = np.random.default_rng(rng)
    x = np.empty(n_steps)
    x[0] = rng.normal(params.stationary_mean, np.sqrt(params.stationary_var))
    for t in range(1, n_steps):
        x[t] = params.a + params.c * x[t - 1] + rng.normal(0.0, params.sigma)
    y = rng.poisson(detection * np.exp(x)).astype(float)
    y[list(missing)] = np.nan
    return x, y


def ar1_propagator(c, n_steps: int):
    """Lower-triangular matrix L with L[t, s] = c**(t - s) for s <= t."""
    c = pt.as_tensor_variable(c)
    t = np.arange(n_steps)
    lag = t[:, None] - t[None, :]
    return (lag >= 0).astype(float) * pt.power(c, np.maximum(lag, 0))


def regularize_cov(cov, floor: float = COV_EIGEN_FLOOR) -> np.ndarray:
    """Symmetric positive-definite version of a (near-singular) covariance."""
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    cov = 0.5 * (cov + cov.T)
    w, v = np.linalg.eigh(cov)
    w = np.clip(w, floor, None)
    return (v * w) @ v.T


def _vague_priors(start: GompertzParameters, parameters: Sequence[str]):
    a = pm.Normal("a", PRIOR_A_MU, PRIOR_A_SD) if "a" in parameters else start.a
    c = pm.Uniform("c", -1.0, 1.0) if "c" in parameters else start.c
    if "sigma" in parameters:
        log_sigma = pm.Normal("log_sigma", PRIOR_LOG_SIGMA_MU, PRIOR_LOG_SIGMA_SD)
        sigma = pm.Deterministic("sigma", pt.exp(log_sigma))
    else:
        sigma = start.sigma
    p = pm.Uniform("p", 0.0, 1.0) if "p" in parameters else None
    return a, c, sigma, p


def _normal_approx_priors(prior, start: GompertzParameters):
    """
    Multivariate normal prior from a posterior summary (MLE + asymptotic covariance).

    Draws outside the parameter space (|c| >= 1, sigma <= 0, p outside (0, 1])
    get zero density through a potential.
    """
    names = list(prior.names)
    theta = pm.MvNormal("theta", mu=np.asarray(prior.mean, dtype=float),
                        cov=regularize_cov(prior.mle_cov), shape=len(names))
    nodes = {name: pm.Deterministic(name, theta[i]) for i, name in enumerate(names)}

    fixed = dict(getattr(prior, "fixed", {}) or {})
    a = nodes.get("a", fixed.get("a", start.a))
    c = nodes.get("c", fixed.get("c", start.c))
    sigma = nodes.get("sigma", fixed.get("sigma", start.sigma))
    p = nodes.get("p")

    inside = []
    if "c" in nodes:
        inside.append(pt.lt(pt.abs(c), 1.0))
    if "sigma" in nodes:
        inside.append(pt.gt(sigma, 0.0))
    if p is not None:
        inside += [pt.gt(p, 0.0), pt.le(p, 1.0)]
    if inside:
        pm.Potential("support", pt.switch(reduce(pt.and_, inside), 0.0, -np.inf))
    return a, c, sigma, p


def build_model(
    series: ObservationSeries,
    k: int,
    start: GompertzParameters,
    parameters: Sequence[str] = ("a", "c", "sigma"),
    prior=None,
    keep_latent: bool = False,
) -> pm.Model:
    """
    Gompertz state-space model for K clones of one series.

    prior=None uses the fixed vague priors (data cloning); otherwise `prior`
    is a posterior summary whose estimate and asymptotic covariance become
    a multivariate normal prior. Parameters not sampled are held at `start`.
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    n_steps = series.n_steps
    idx = series.observed_index

    with pm.Model() as model:

        # ---- parameters ----
        if prior is None:
            a, c, sigma, p = _vague_priors(start, parameters)
        else:
            a, c, sigma, p = _normal_approx_priors(prior, start)

        # ---- latent AR(1) in log space, non-centred, one row per clone ----
        z = pm.Normal("z", 0.0, 1.0, shape=(k, n_steps))

        mu = a / (1.0 - c)
        sd0 = sigma / pt.sqrt(1.0 - c ** 2)
        w = pt.concatenate([sd0 * z[:, :1], sigma * z[:, 1:]], axis=1)
        x = mu + pt.dot(w, ar1_propagator(c, n_steps).T)
        if keep_latent:
            x = pm.Deterministic("x", x)

        # ---- Poisson counts at observed steps only ----
        if idx.size:
            lam = pt.exp(x[:, idx])
            if p is not None:
                lam = p * lam
            pm.Poisson("y", mu=lam, observed=np.tile(series.observed_counts, (k, 1)))

    logger.debug("%s: model with K=%d, T=%d, %d observed", series.key, k, n_steps, idx.size)
    return model


def initial_values(start: GompertzParameters, parameters: Sequence[str]) -> dict:
    """Starting point for the sampled free variables."""
    vals = {}
    if "a" in parameters:
        vals["a"] = start.a
    if "c" in parameters:
        vals["c"] = start.c
    if "sigma" in parameters:
        vals["log_sigma"] = np.log(start.sigma)
    if "p" in parameters:
        vals["p"] = 0.5
    return vals


def sampled_names(parameters: Sequence[str]) -> Tuple[str, ...]:
    """Estimated parameter names in canonical order."""
    return tuple(n for n in ("a", "c", "sigma", "p") if n in parameters)


def start_from(values: dict, default: Optional[GompertzParameters] = None) -> GompertzParameters:
    base = default or GompertzParameters(0.0, 0.5, 0.09)
    sigma = values.get("sigma", base.sigma)
    return GompertzParameters(
        a=float(values.get("a", base.a)),
        c=float(values.get("c", base.c)),
        sigma2=float(sigma) ** 2,
    )
