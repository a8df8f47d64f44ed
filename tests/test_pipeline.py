"""End-to-end and batch tests."""

import time

import numpy as np
import pandas as pd
import pytest

from gompertz_clone import pipeline
from gompertz_clone.config import RunConfig
from gompertz_clone.errors import InvalidInputError, ResourceExhaustionError, SeriesFitError
from gompertz_clone.gapfill import fill_gaps, series_from_table
from gompertz_clone.pipeline import fit_batch, fit_series


@pytest.fixture
def ladder_config(fast_config) -> RunConfig:
    return fast_config.replace(ladder=(1, 5, 10))


class TestFitSeries:
    def test_end_to_end_with_gap(self, ladder_config):
        series = fill_gaps(np.arange(5), [12, 9, None, 15, 11], key=("site1", "sp1"))
        result = fit_series(series, ladder_config)

        assert result.key == ("site1", "sp1")
        assert np.all(np.isfinite(result.summary.cov))
        assert np.all(np.isfinite(result.summary.mean))

        table = result.diagnostics.table
        assert len(table) == 3
        assert table["k"].tolist() == [1, 5, 10]

        traj = result.trajectory
        assert len(traj) == 5
        assert pd.isna(traj.loc[2, "observed"])
        triple = traj.loc[2, ["lower", "median", "upper"]].to_numpy(dtype=float)
        assert np.all(np.isfinite(triple))
        assert triple[0] <= triple[1] <= triple[2]

        params = result.diagnostics.parameters
        assert params["parameter"].tolist() == ["a", "c", "sigma"]
        assert params["non_identifiable"].dtype == bool

    def test_require_identifiable_skips_trajectory(self, monkeypatch, ladder_config):
        series = fill_gaps(np.arange(5), [12, 9, None, 15, 11])
        real = pipeline.diagnose

        def flag_everything(runs, config):
            diag = real(runs, config)
            diag.parameters["non_identifiable"] = True
            return diag

        monkeypatch.setattr(pipeline, "diagnose", flag_everything)
        result = fit_series(series, ladder_config.replace(require_identifiable=True))
        assert result.trajectory is None
        assert not result.accepted

    def test_failure_carries_key(self, monkeypatch, fast_config):
        def no_summary(series, config, start):
            raise ResourceExhaustionError("no replication level produced a finite summary")

        monkeypatch.setattr(pipeline, "estimate", no_summary)
        series = fill_gaps(np.arange(3), [1, 2, 3], key=("s", "x"))
        with pytest.raises(SeriesFitError) as err:
            fit_series(series, fast_config)
        assert err.value.key == ("s", "x")
        assert isinstance(err.value.cause, ResourceExhaustionError)


class TestFitBatch:
    def test_one_failure_does_not_abort(self, monkeypatch, fast_config):
        table = pd.DataFrame({
            "site": ["A"] * 4 + ["B"] * 4,
            "species": ["x"] * 8,
            "quarter": list(range(4)) * 2,
            "count": [10, 12, np.nan, 11, 5, 6, 7, 5],
        })
        series_list = series_from_table(table)
        real = pipeline.estimate

        def fail_for_b(series, config, start):
            if series.key[0] == "B":
                raise InvalidInputError("bad series")
            return real(series, config, start)

        monkeypatch.setattr(pipeline, "estimate", fail_for_b)
        batch = fit_batch(series_list, fast_config.replace(ladder=(1,)))

        assert list(batch.results) == [("A", "x")]
        failures = batch.failures_frame()
        assert failures[["site", "species"]].values.tolist() == [["B", "x"]]
        assert failures.loc[0, "error_type"] == "InvalidInputError"

        summaries = batch.summaries()
        assert set(summaries["site"]) == {"A"}
        assert {"parameter", "estimate", "std_error", "rhat", "accepted"} <= set(summaries)
        assert len(batch.trajectories()) == 4
        assert len(batch.diagnostics()) == 1
        assert len(batch.identifiability()) == 3

        cov = batch.covariances()
        assert len(cov) == 9
        assert {"site", "species", "row", "col", "cov", "mle_cov"} <= set(cov)

    def test_empty_batch(self, fast_config):
        batch = fit_batch([], fast_config)
        assert batch.summaries().empty
        assert batch.failures_frame().empty


def _quick_result(series, config):
    """Stand-in for a full fit; sleeps for series keyed 'hung'."""
    if series.key[0] == "hung":
        time.sleep(60)
    if series.key[0] == "bad":
        raise SeriesFitError(series.key, InvalidInputError("bad series"))
    return pipeline.SeriesResult(
        key=series.key, guess=None, runs=[], diagnostics=None, summary=None,
        elapsed=float(series.n_steps),
    )


class TestFitBatchProcesses:
    def _series(self, *sites):
        return [fill_gaps(np.arange(i + 2), [1] * (i + 2), key=(site, "sp"))
                for i, site in enumerate(sites)]

    def test_timeout_only_fails_the_stuck_series(self, monkeypatch, fast_config):
        monkeypatch.setattr(pipeline, "fit_series", _quick_result)
        series_list = self._series("hung", "ok1", "ok2")

        t0 = time.monotonic()
        batch = fit_batch(series_list, fast_config.replace(workers=1, timeout=3))
        assert time.monotonic() - t0 < 30

        assert set(batch.results) == {("ok1", "sp"), ("ok2", "sp")}
        kinds = {key[0]: kind for key, kind, _ in batch.failures}
        assert kinds == {"hung": "ResourceExhaustionError"}

    def test_parallel_results_keyed(self, monkeypatch, fast_config):
        monkeypatch.setattr(pipeline, "fit_series", _quick_result)
        series_list = self._series("A", "B", "bad", "C")

        batch = fit_batch(series_list, fast_config.replace(workers=2))

        assert set(batch.results) == {("A", "sp"), ("B", "sp"), ("C", "sp")}
        for series in series_list:
            if series.key in batch.results:
                assert batch.results[series.key].key == series.key
                assert batch.results[series.key].elapsed == series.n_steps
        assert batch.failures == [(("bad", "sp"), "InvalidInputError", "bad series")]
