"""
Exception and warning types for GLMCraft.

Configuration problems are raised as ``ConfigurationError`` (a ``ValueError``
subclass, so callers catching ``ValueError`` keep working). Failures surfaced
by nilearn or nibabel are wrapped in ``ExternalSolverError`` and chained to the
original exception.
"""


class ConfigurationError(ValueError):
    """Bad or missing user-supplied GLM parameters."""


class MissingParametersError(ConfigurationError):
    """Scan parameters (nses, nvols, tr) are unavailable from every source."""


class ExternalSolverError(RuntimeError):
    """Failure raised by the design-matrix builder or the estimation solver."""


class NumericConvergenceWarning(RuntimeWarning):
    """An iterative estimator stopped before reaching its tolerance."""
