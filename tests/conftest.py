"""Shared fixtures for gompertz_clone tests."""

import arviz as az
import numpy as np
import pytest

from gompertz_clone.cloning import CloningRun, summarize
from gompertz_clone.config import RunConfig
from gompertz_clone.gapfill import fill_gaps
from gompertz_clone.model import GompertzParameters, simulate


@pytest.fixture
def fast_config() -> RunConfig:
    """Small sampling budget; single process so tests stay deterministic."""
    return RunConfig(ladder=(1, 2), chains=2, cores=1, tune=150, draws=150, seed=1)


@pytest.fixture
def true_params() -> GompertzParameters:
    return GompertzParameters(a=0.1, c=0.6, sigma2=0.05)


@pytest.fixture
def abundant_params() -> GompertzParameters:
    """Stationary mean log-abundance of 2.5 (about 12 individuals)."""
    return GompertzParameters(a=1.0, c=0.6, sigma2=0.05)


@pytest.fixture
def make_series():
    def _make(counts, key=("site", "species")):
        return fill_gaps(np.arange(len(counts)), counts, key=key)
    return _make


@pytest.fixture
def simulated_series(abundant_params, make_series):
    _, y = simulate(abundant_params, 20, rng=7, missing=[6, 7, 13])
    return make_series(y)


def fake_run(k, draws_by_name, n_chains=2):
    """CloningRun from given pooled draws, split evenly over chains."""
    posterior = az.from_dict(posterior={
        name: np.asarray(v, dtype=float).reshape(n_chains, -1)
        for name, v in draws_by_name.items()
    }).posterior
    summary = summarize(posterior, list(draws_by_name), k)
    return CloningRun(k=k, posterior=posterior, summary=summary)


@pytest.fixture
def make_run():
    return fake_run
