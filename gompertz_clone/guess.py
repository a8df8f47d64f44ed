"""
Moment-based starting values for the Gompertz parameters.

Treats the log counts of a compacted series as a discretely sampled
Ornstein-Uhlenbeck process with sampling error, and estimates

    mean   : stationary mean of the log counts
    decay  : theta, from the geometric mean ratio of successive
             deviations from the mean per elapsed step
    process variance (beta^2) and sampling variance (tau^2), from the
             stationary-variance identity Var = tau^2 + beta^2 / (2 theta)

These are starting values only: degenerate input never raises, it
falls back to fixed defaults.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .gapfill import ObservationSeries
from .model import GompertzParameters

logger = logging.getLogger(__name__)

DEFAULT_DECAY = 0.5
DEFAULT_PROCESS_VAR = 0.09
DEFAULT_SAMPLING_VAR = 0.23
NUMERICAL_FLOOR = 1e-7

# largest |c| used as a starting value
C_START_LIMIT = 0.99


@dataclass(frozen=True)
class InitialGuess:
    mean: float
    decay: float
    process_var: float
    sampling_var: float
    fallback: bool = False

    def as_triple(self) -> Tuple[float, float, float]:
        return self.mean, self.decay, self.process_var

    def to_gompertz(self) -> GompertzParameters:
        """
        AR(1) starting values for the log-scale process.

        c = exp(-theta), a = mean * (1 - c), and the one-step innovation
        variance of an OU process with infinitesimal variance beta^2.
        """
        c = float(np.clip(np.exp(-self.decay), -C_START_LIMIT, C_START_LIMIT))
        theta = -np.log(c)
        sigma2 = self.process_var * (1.0 - c ** 2) / (2.0 * theta)
        return GompertzParameters(a=self.mean * (1.0 - c), c=c, sigma2=max(sigma2, NUMERICAL_FLOOR))


def _fallback_mean(y) -> float:
    y = np.asarray(y, dtype=float)
    m = np.log1p(y.mean()) if y.size else np.nan
    return float(m) if np.isfinite(m) and m > NUMERICAL_FLOOR else NUMERICAL_FLOOR


def _defaults(mean: float) -> InitialGuess:
    return InitialGuess(
        mean=abs(mean) if abs(mean) > NUMERICAL_FLOOR else NUMERICAL_FLOOR,
        decay=DEFAULT_DECAY,
        process_var=DEFAULT_PROCESS_VAR,
        sampling_var=DEFAULT_SAMPLING_VAR,
        fallback=True,
    )


def guess_moments(t, y) -> InitialGuess:
    """
    Moment estimates from elapsed times t and strictly positive counts y.

    Zero counts, fewer than two observations, or any undefined/tiny
    estimate give the default guess.
    """
    t = np.asarray(t, dtype=float)
    y = np.asarray(y, dtype=float)

    if y.size < 2 or np.any(y <= 0):
        logger.warning("Initial guess: %d counts, zeros present=%s; using defaults",
                       y.size, bool(np.any(y <= 0)))
        return _defaults(_fallback_mean(y))

    logy = np.log(y)
    q = logy.size - 1
    dt = np.diff(t)
    ybar = logy.mean()
    yvar = np.sum((logy - ybar) ** 2) / q

    with np.errstate(divide="ignore", invalid="ignore"):
        ratios = np.abs((logy[1:] - ybar) / (logy[:-1] - ybar))
        theta = -np.mean(np.log(ratios) / dt)
        process_var = 2.0 * theta * yvar / (1.0 + 2.0 * theta)
        sampling_var = yvar / (1.0 + 2.0 * theta)

    raw = np.array([ybar, theta, process_var])
    if not np.all(np.isfinite(raw)) or raw.sum() == 0 or not np.isfinite(sampling_var):
        logger.warning("Initial guess undefined (mean=%.3g, theta=%.3g); using defaults", ybar, theta)
        return _defaults(ybar)
    if np.any(raw < NUMERICAL_FLOOR):
        logger.warning("Initial guess below floor (theta=%.3g, var=%.3g); using defaults",
                       theta, process_var)
        return _defaults(ybar)

    return InitialGuess(
        mean=float(abs(ybar)),
        decay=float(abs(theta)),
        process_var=float(abs(process_var)),
        sampling_var=float(max(abs(sampling_var), NUMERICAL_FLOOR)),
    )


def guess_initial(series: ObservationSeries) -> InitialGuess:
    """Initial guess from the compacted (gap-free, re-zeroed) view of a series."""
    t, y = series.compacted()
    return guess_moments(t, y)
