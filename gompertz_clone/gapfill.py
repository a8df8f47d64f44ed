"""
Regular time grid for count series.

A series is stored on a contiguous grid 0..T-1 with NaN marking steps
without an observation. The estimator and the trajectory sampler always
use this full grid; `compacted()` is only for the moment-based initial
guess.
"""

import logging
from dataclasses import dataclass
from typing import Hashable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

MISSING = np.nan


@dataclass(frozen=True, eq=False)
class ObservationSeries:
    """Counts for one (site, species) pair on a regular quarterly grid."""

    key: Tuple[Hashable, ...]
    counts: np.ndarray      # float, NaN = no observation
    origin: int = 0         # grid value of step 0 (e.g. quarter ordinal)

    @property
    def n_steps(self) -> int:
        return len(self.counts)

    @property
    def observed(self) -> np.ndarray:
        return ~np.isnan(self.counts)

    @property
    def n_missing(self) -> int:
        return int((~self.observed).sum())

    @property
    def observed_index(self) -> np.ndarray:
        return np.flatnonzero(self.observed)

    @property
    def observed_counts(self) -> np.ndarray:
        return self.counts[self.observed].astype(int)

    def compacted(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Drop missing steps and re-zero time on the first remaining observation.

        Returns (t, y): elapsed steps since the first observation and the counts.
        """
        idx = self.observed_index
        if idx.size == 0:
            return np.array([], dtype=int), np.array([], dtype=int)
        return idx - idx[0], self.counts[idx].astype(int)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "t": np.arange(self.n_steps),
            "grid": self.origin + np.arange(self.n_steps),
            "count": pd.array(
                [None if np.isnan(v) else int(v) for v in self.counts], dtype="Int64"
            ),
        })


def _as_counts(values) -> np.ndarray:
    counts = pd.to_numeric(pd.Series(values, dtype="object"), errors="coerce")
    counts = counts.to_numpy(dtype=float, na_value=np.nan)
    present = counts[~np.isnan(counts)]
    if np.any(present < 0):
        raise InvalidInputError("counts must be non-negative")
    if np.any(present != np.round(present)):
        raise InvalidInputError("counts must be integers")
    return counts


def fill_gaps(
    times: Sequence[int],
    counts: Sequence,
    key: Tuple[Hashable, ...] = (),
    start: Optional[int] = None,
    stop: Optional[int] = None,
) -> ObservationSeries:
    """
    Align (time, count) pairs to the regular grid start..stop.

    The grid defaults to the observed min/max time. Time steps absent from
    the input, and counts given as None/NaN, become missing markers.
    """
    times = np.asarray(times)
    if times.size == 0:
        raise InvalidInputError(f"{key}: empty series")
    if len(times) != len(counts):
        raise InvalidInputError(f"{key}: {len(times)} times but {len(counts)} counts")
    if np.any(times != np.round(times)):
        raise InvalidInputError(f"{key}: time indices must be integers")
    times = times.astype(int)

    uniq, n_seen = np.unique(times, return_counts=True)
    if np.any(n_seen > 1):
        raise InvalidInputError(f"{key}: duplicate time index {uniq[n_seen > 1].tolist()}")

    values = _as_counts(counts)

    start = int(times.min()) if start is None else int(start)
    stop = int(times.max()) if stop is None else int(stop)
    if times.min() < start or times.max() > stop:
        raise InvalidInputError(f"{key}: observations fall outside grid {start}..{stop}")

    grid = np.full(stop - start + 1, MISSING)
    grid[times - start] = values

    series = ObservationSeries(key=tuple(key), counts=grid, origin=start)
    logger.debug("%s: %d steps, %d missing", key, series.n_steps, series.n_missing)
    return series


def quarter_index(dates) -> np.ndarray:
    """Quarter ordinals for dates; consecutive quarters differ by one."""
    return pd.DatetimeIndex(pd.to_datetime(dates)).to_period("Q").asi8


def series_from_table(
    table: pd.DataFrame,
    key_cols: Sequence[str] = ("site", "species"),
    time_col: str = "quarter",
    count_col: str = "count",
    common_grid: bool = False,
) -> List[ObservationSeries]:
    """
    Build one gap-filled series per key from a long count table.

    With common_grid, every series is padded to the table-wide time span
    so that all series share the same length.
    """
    required = set(key_cols) | {time_col, count_col}
    missing = required - set(table.columns)
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    start = stop = None
    if common_grid:
        start, stop = int(table[time_col].min()), int(table[time_col].max())

    out = []
    for key, g in table.groupby(list(key_cols), sort=True):
        key = key if isinstance(key, tuple) else (key,)
        out.append(fill_gaps(g[time_col].to_numpy(), g[count_col].to_numpy(),
                             key=key, start=start, stop=stop))
    return out
