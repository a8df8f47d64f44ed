"""
Gompertz state-space population models fitted by data cloning.

Count series per (site, species) are gap-filled onto a quarterly grid,
fitted by maximum likelihood through data cloning with PyMC, checked for
convergence and identifiability across the cloning ladder, and turned
into reconstructed abundance trajectories.
"""

from .cloning import CloningRun, PosteriorSummary, estimate
from .config import RunConfig
from .diagnostics import LadderDiagnostics, diagnose
from .errors import (
    GompertzCloneError,
    InvalidInputError,
    NumericDegeneracyError,
    ResourceExhaustionError,
    SeriesFitError,
)
from .gapfill import ObservationSeries, fill_gaps, quarter_index, series_from_table
from .guess import InitialGuess, guess_initial
from .model import GompertzParameters, build_model, simulate
from .pipeline import BatchResult, SeriesResult, fit_batch, fit_series
from .trajectory import sample_trajectory

__version__ = "1.0.0"
