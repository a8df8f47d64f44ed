"""PyMC sampler call shared by the cloning ladder and the trajectory pass."""

import logging
from typing import Optional, Sequence

import numpy as np
import pymc as pm

from .config import RunConfig

logger = logging.getLogger(__name__)


def sample_model(
    model: pm.Model,
    config: RunConfig,
    seed: Optional[int],
    initvals: Optional[dict] = None,
    var_names: Optional[Sequence[str]] = None,
    init: str = "jitter+adapt_diag",
):
    """
    NUTS with the configured budgets; returns the burn-trimmed, thinned posterior.

    Each chain gets its own sampler state; PyMC spawns them from one seed.
    """
    with model:
        idata = pm.sample(
            draws=config.burn + config.draws,
            tune=config.tune,
            init=init,
            chains=config.chains,
            cores=config.cores,
            target_accept=config.target_accept,
            random_seed=seed,
            initvals=initvals,
            var_names=list(var_names) if var_names is not None else None,
            compute_convergence_checks=False,
            progressbar=False,
        )
    posterior = idata.posterior.isel(draw=slice(config.burn, None, config.thin))

    n_div = 0
    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        n_div = int(idata.sample_stats["diverging"].values.sum())
    if n_div:
        logger.info("%d divergent transitions", n_div)
    return posterior


def pooled_draws(posterior, names: Sequence[str]) -> np.ndarray:
    """Draws of scalar variables pooled over chains, shape (n_samples, n_params)."""
    return np.column_stack([posterior[name].values.reshape(-1) for name in names])


def chain_draws(posterior, name: str) -> np.ndarray:
    """Draws of one scalar variable, shape (chains, draws)."""
    return np.asarray(posterior[name].values).reshape(posterior.sizes["chain"], -1)
