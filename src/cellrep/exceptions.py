"""Exception hierarchy for cellrep."""

from __future__ import annotations


class CellrepError(Exception):
    """Base class for all cellrep errors."""


class ConfigurationError(CellrepError, ValueError):
    """Malformed or missing keys, invalid parameters or contrasts."""


class StatisticShapeError(ConfigurationError):
    """A statistic callback returned an output of inconsistent shape."""


class DegenerateDataError(CellrepError, ValueError):
    """Input data cannot support the requested computation.

    Raised when no units remain after dropping missing values, or when a
    permutation block holds fewer than two distinct labels.
    """


class ExternalToolError(CellrepError, RuntimeError):
    """An external program (CD-HIT) is unavailable or failed."""
