"""DICAL error types.

Numerical non-convergence is never an exception; it is reported through
``CalibrationResult``. Only structural problems with the inputs raise.
"""


class DicalError(Exception):
    """Base class for all dical errors."""


class CalibrationStructureError(DicalError, ValueError):
    """Inputs are inconsistent (shapes, counts, indices) before solving."""


class ConfigError(DicalError, ValueError):
    """A configuration file or value is invalid."""
