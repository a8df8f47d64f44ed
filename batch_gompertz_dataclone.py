#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Batch Gompertz state-space modelling by data cloning (PyMC): one model per site × species.

Population model:
  X_t = a + c * X_{t-1} + E_t,   E_t ~ Normal(0, σ²),   |c| < 1
  y_t ~ Poisson(exp(X_t))        (quarters without a survey: no likelihood term)

Estimation:
  maximum likelihood by data cloning over a ladder of K clones,
  with R-hat / contraction diagnostics per parameter,
  then latent abundance reconstruction for every quarter.

Inputs:
  - site_species_quarter_counts.tsv   (site, species, quarter, count)
    quarter is a date inside the quarter; count is empty when not surveyed

Outputs:
  - gompertz_estimates.tsv        MLE, standard errors, R-hat per parameter
  - gompertz_covariance.tsv       posterior and asymptotic MLE covariance (long format)
  - gompertz_ladder.tsv           per-K cloning diagnostics
  - gompertz_identifiability.tsv  per-parameter non-identifiability flags
  - gompertz_trajectories.tsv     reconstructed abundance per quarter
  - failed_series.tsv
"""

import logging
from pathlib import Path

import pandas as pd

from gompertz_clone import RunConfig, fit_batch, quarter_index, series_from_table


# ---------------------------
# Paths
# ---------------------------
BASE = Path.cwd()
in_path = BASE / "inputs" / "site_species_quarter_counts.tsv"
out_dir = BASE / "outputs_models"

# ---------------------------
# Parameters
# ---------------------------
# series filtering (adjust for runtime)
min_observed = 8       # quarters with a count
max_series = 50

# data cloning ladder
ladder = (1, 5, 10, 20)

# PyMC sampling settings (increase for final)
draws = 800
tune  = 800
burn  = 0
thin  = 1
chains = 2
cores  = 2
target_accept = 0.9
seed = 42

workers = 1            # series fitted in parallel; use cores=1 when > 1
timeout = None         # seconds per series, the fit is stopped past it


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    out_dir.mkdir(parents=True, exist_ok=True)

    # ---------------------------
    # Load inputs
    # ---------------------------
    print("Loading inputs...")
    counts = pd.read_csv(in_path, sep="\t")
    counts["quarter"] = quarter_index(counts["quarter"])
    counts["count"] = pd.to_numeric(counts["count"], errors="coerce")
    print("Count rows:", len(counts))

    # ---------------------------
    # Series filter
    # ---------------------------
    n_obs = (counts.dropna(subset=["count"])
                   .groupby(["site", "species"]).size()
                   .rename("n_observed").reset_index())
    keep = n_obs.query("n_observed >= @min_observed").head(max_series)
    counts = counts.merge(keep[["site", "species"]], on=["site", "species"], how="inner")

    series_list = series_from_table(counts, key_cols=("site", "species"),
                                    time_col="quarter", count_col="count")
    print(f"Series to model: {len(series_list)}")

    config = RunConfig(
        ladder=ladder, chains=chains, cores=cores, tune=tune, burn=burn,
        draws=draws, thin=thin, target_accept=target_accept, seed=seed,
        workers=workers, timeout=timeout,
    )

    # ---------------------------
    # Batch fit
    # ---------------------------
    batch = fit_batch(series_list, config)
    print(f"\nFitted: {len(batch.results)}  Failed: {len(batch.failures)}")

    for key, res in batch.results.items():
        est = res.summary.to_frame().set_index("parameter")["estimate"]
        flagged = res.diagnostics.non_identifiable
        print(f"  {key}: " + "  ".join(f"{p}={v:.3f}" for p, v in est.items())
              + (f"  non-identifiable: {flagged}" if flagged else ""))

    # ---------------------------
    # Save results
    # ---------------------------
    outputs = {
        "gompertz_estimates.tsv": batch.summaries(),
        "gompertz_covariance.tsv": batch.covariances(),
        "gompertz_ladder.tsv": batch.diagnostics(),
        "gompertz_identifiability.tsv": batch.identifiability(),
        "gompertz_trajectories.tsv": batch.trajectories(),
    }
    for name, table in outputs.items():
        if table.empty:
            print("No results for", name)
            continue
        path = out_dir / name
        table.to_csv(path, sep="\t", index=False)
        print("Saved:", path)

    # Save failures log
    if batch.failures:
        fail_path = out_dir / "failed_series.tsv"
        batch.failures_frame().to_csv(fail_path, sep="\t", index=False)
        print("Saved failures:", fail_path)


if __name__ == "__main__":
    main()
