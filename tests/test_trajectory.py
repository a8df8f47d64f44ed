"""Tests for latent trajectory reconstruction."""

import numpy as np
import pytest

from gompertz_clone.cloning import PosteriorSummary
from gompertz_clone.gapfill import fill_gaps
from gompertz_clone.trajectory import sample_trajectory


@pytest.fixture
def summary():
    """Estimate near a=1.0, c=0.6, sigma=0.25 with a modest asymptotic covariance."""
    return PosteriorSummary(
        k=10, names=("a", "c", "sigma"),
        mean=np.array([1.0, 0.6, 0.25]),
        cov=np.diag([0.002, 0.0005, 0.0002]),
        rhat={"a": 1.0, "c": 1.0, "sigma": 1.0},
        ess={"a": 400.0, "c": 400.0, "sigma": 400.0},
        n_draws=400,
    )


class TestSampleTrajectory:
    def test_interior_gap(self, summary, fast_config):
        counts = [14, 11, 12, None, None, None, 9, 13, 15]
        series = fill_gaps(np.arange(len(counts)), counts, key=("S1", "sp"))
        traj = sample_trajectory(series, summary, fast_config)

        assert len(traj) == series.n_steps
        gap = traj.iloc[3:6]
        assert gap["observed"].isna().all()
        for col in ("lower", "median", "upper", "mean", "hdi_low", "hdi_high"):
            assert np.all(np.isfinite(traj[col]))
            assert np.all(traj[col] >= 0)
        assert np.all(traj["lower"] <= traj["median"])
        assert np.all(traj["median"] <= traj["upper"])

    def test_gap_is_wider_than_observed(self, summary, fast_config):
        counts = [14, 11, 12, None, None, None, None, 13, 15]
        series = fill_gaps(np.arange(len(counts)), counts)
        traj = sample_trajectory(series, summary, fast_config)
        width = np.log(traj["upper"]) - np.log(traj["lower"])
        assert width.iloc[3:7].mean() > width.iloc[[0, 1, 7, 8]].mean()

    def test_observed_counts_carried(self, summary, fast_config):
        series = fill_gaps([4, 5, 7], [10, 12, 11])
        traj = sample_trajectory(series, summary, fast_config)
        assert traj["grid"].tolist() == [4, 5, 6, 7]
        assert traj["observed"].tolist()[:2] == [10, 12]
        assert traj["observed"].isna().tolist() == [False, False, True, False]

    def test_custom_quantiles(self, summary, fast_config):
        series = fill_gaps(np.arange(4), [10, 12, None, 11])
        narrow = sample_trajectory(series, summary, fast_config.replace(quantiles=(0.4, 0.5, 0.6)))
        wide = sample_trajectory(series, summary, fast_config.replace(quantiles=(0.05, 0.5, 0.95)))
        assert np.all(wide["upper"] - wide["lower"] > narrow["upper"] - narrow["lower"])
