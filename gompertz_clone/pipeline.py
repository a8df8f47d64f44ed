"""
Per-series fit and failure-tolerant batch loop.

fit_series: initial guess -> cloning ladder -> diagnostics -> trajectory.
fit_batch: runs fit_series over many series, in-process or one process per
series with a deadline, and collects failures per series key instead of aborting.
"""

import logging
import multiprocessing as mp
import time
from collections import deque
from dataclasses import dataclass, field
from multiprocessing.connection import wait as mp_wait
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

import pandas as pd

from .cloning import CloningRun, PosteriorSummary, accepted_summary, estimate
from .config import RunConfig
from .diagnostics import LadderDiagnostics, diagnose
from .errors import ResourceExhaustionError, SeriesFitError
from .gapfill import ObservationSeries
from .guess import InitialGuess, guess_initial
from .trajectory import sample_trajectory

logger = logging.getLogger(__name__)

KEY_COLUMNS = ("site", "species")


@dataclass
class SeriesResult:
    key: Tuple[Hashable, ...]
    guess: InitialGuess
    runs: List[CloningRun]
    diagnostics: LadderDiagnostics
    summary: PosteriorSummary
    trajectory: Optional[pd.DataFrame] = None
    elapsed: float = 0.0

    @property
    def accepted(self) -> bool:
        return self.diagnostics.converged


def fit_series(series: ObservationSeries, config: RunConfig) -> SeriesResult:
    """Full fit for one series; any failure is raised as SeriesFitError with the key."""
    t0 = time.time()
    try:
        guess = guess_initial(series)
        start = guess.to_gompertz()
        logger.info("%s: start a=%.3f c=%.3f sigma2=%.4f%s", series.key,
                    start.a, start.c, start.sigma2, " (defaults)" if guess.fallback else "")

        runs = estimate(series, config, start)
        diagnostics = diagnose(runs, config)
        summary = accepted_summary(runs)

        trajectory = None
        if config.require_identifiable and diagnostics.non_identifiable:
            logger.warning("%s: skipping trajectory, non-identifiable: %s",
                           series.key, diagnostics.non_identifiable)
        else:
            trajectory = sample_trajectory(series, summary, config)
    except SeriesFitError:
        raise
    except Exception as e:
        raise SeriesFitError(series.key, e) from e

    return SeriesResult(
        key=series.key,
        guess=guess,
        runs=runs,
        diagnostics=diagnostics,
        summary=summary,
        trajectory=trajectory,
        elapsed=time.time() - t0,
    )


@dataclass
class BatchResult:
    results: Dict[Tuple[Hashable, ...], SeriesResult] = field(default_factory=dict)
    failures: List[Tuple[Tuple[Hashable, ...], str, str]] = field(default_factory=list)

    def _keyed(self, key, frame: pd.DataFrame) -> pd.DataFrame:
        frame = frame.copy()
        names = KEY_COLUMNS if len(key) == len(KEY_COLUMNS) else [f"key{i}" for i in range(len(key))]
        for i, (col, val) in enumerate(zip(names, key)):
            frame.insert(i, col, val)
        return frame

    def _concat(self, frames) -> pd.DataFrame:
        frames = [f for f in frames if f is not None and len(f)]
        return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    def summaries(self) -> pd.DataFrame:
        return self._concat(
            self._keyed(k, r.summary.to_frame().assign(accepted=r.accepted))
            for k, r in self.results.items()
        )

    def covariances(self) -> pd.DataFrame:
        return self._concat(self._keyed(k, r.summary.cov_frame()) for k, r in self.results.items())

    def diagnostics(self) -> pd.DataFrame:
        return self._concat(self._keyed(k, r.diagnostics.table) for k, r in self.results.items())

    def identifiability(self) -> pd.DataFrame:
        return self._concat(self._keyed(k, r.diagnostics.parameters) for k, r in self.results.items())

    def trajectories(self) -> pd.DataFrame:
        return self._concat(
            self._keyed(k, r.trajectory) for k, r in self.results.items() if r.trajectory is not None
        )

    def failures_frame(self) -> pd.DataFrame:
        rows = []
        for key, error_type, error in self.failures:
            row = dict(zip(KEY_COLUMNS, key)) if len(key) == len(KEY_COLUMNS) else {"key": key}
            row.update({"error_type": error_type, "error": error})
            rows.append(row)
        return pd.DataFrame(rows)


def _record(batch: BatchResult, series: ObservationSeries, i: int, n: int, outcome) -> None:
    if isinstance(outcome, SeriesResult):
        batch.results[series.key] = outcome
        logger.info("[%d/%d] %s OK in %.1f min", i, n, series.key, outcome.elapsed / 60)
        return
    cause = outcome.cause if isinstance(outcome, SeriesFitError) else outcome
    batch.failures.append((series.key, type(cause).__name__, str(cause)))
    logger.error("[%d/%d] %s FAILED: %s", i, n, series.key, outcome)


def _fit_in_child(conn, series: ObservationSeries, config: RunConfig) -> None:
    """Worker process body: send the SeriesResult or the SeriesFitError back."""
    try:
        outcome = fit_series(series, config)
    except SeriesFitError as e:
        outcome = e
    conn.send(outcome)
    conn.close()


def _stop(proc) -> None:
    proc.terminate()
    proc.join(1)
    if proc.is_alive():
        proc.kill()
        proc.join()


def _start_method():
    # fork keeps the parent's loaded modules; not available on Windows
    if "fork" in mp.get_all_start_methods():
        return mp.get_context("fork")
    return mp.get_context()


def fit_batch(series_list: Sequence[ObservationSeries], config: RunConfig) -> BatchResult:
    """
    Fit every series independently. One series failing (or timing out) is
    recorded in `failures` and never stops the others.

    With workers > 1 or a timeout, each series runs in its own process.
    The timeout counts from that series' start; a process past its deadline
    is terminated and the series is recorded as ResourceExhaustionError.
    """
    batch = BatchResult()
    n = len(series_list)

    if config.workers == 1 and config.timeout is None:
        for i, series in enumerate(series_list, 1):
            try:
                outcome = fit_series(series, config)
            except SeriesFitError as e:
                outcome = e
            _record(batch, series, i, n, outcome)
        return batch

    ctx = _start_method()
    pending = deque(enumerate(series_list, 1))
    running = {}  # receiving end -> (i, series, process, deadline)
    try:
        while pending or running:
            while pending and len(running) < config.workers:
                i, series = pending.popleft()
                recv, send = ctx.Pipe(duplex=False)
                proc = ctx.Process(target=_fit_in_child, args=(send, series, config))
                proc.start()
                send.close()
                deadline = None if config.timeout is None else time.monotonic() + config.timeout
                running[recv] = (i, series, proc, deadline)

            deadlines = [d for (_, _, _, d) in running.values() if d is not None]
            wait_for = max(0.0, min(deadlines) - time.monotonic()) if deadlines else None
            for conn in mp_wait(list(running), timeout=wait_for):
                i, series, proc, _ = running.pop(conn)
                try:
                    outcome = conn.recv()
                except EOFError:
                    outcome = None
                conn.close()
                proc.join()
                if outcome is None:
                    outcome = RuntimeError(f"worker exited with code {proc.exitcode} before returning a result")
                _record(batch, series, i, n, outcome)

            now = time.monotonic()
            for conn, (i, series, proc, deadline) in list(running.items()):
                if deadline is not None and now >= deadline:
                    del running[conn]
                    _stop(proc)
                    conn.close()
                    _record(batch, series, i, n, ResourceExhaustionError(
                        f"{series.key}: no result within {config.timeout:g} s"))
    finally:
        for conn, (_, _, proc, _) in running.items():
            _stop(proc)
            conn.close()
    return batch
