"""
Exceptions raised by the Gompertz data-cloning engine.

Non-identifiability is not an error: it is reported as a per-parameter
flag by the ladder diagnostics.
"""


class GompertzCloneError(Exception):
    """Base class for all errors raised by this package."""


class InvalidInputError(GompertzCloneError, ValueError):
    """Structurally malformed observation input (duplicate times, negative counts, ...)."""


class NumericDegeneracyError(GompertzCloneError):
    """A clone level produced non-finite draws or hit the stationarity boundary."""

    def __init__(self, k, message):
        super().__init__(k, message)
        self.k = k
        self.message = message

    def __str__(self):
        return f"K={self.k}: {self.message}"


class ResourceExhaustionError(GompertzCloneError):
    """No finite summary within the iteration budget, or the series timed out."""


class SeriesFitError(GompertzCloneError):
    """Any failure of one series, with the series key attached."""

    def __init__(self, key, cause):
        super().__init__(key, cause)
        self.key = key
        self.cause = cause

    def __str__(self):
        return f"{self.key}: {type(self.cause).__name__}: {self.cause}"
