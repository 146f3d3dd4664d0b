"""
Exception hierarchy for pydsm.

All errors raised by the package subclass ``DSMError`` and the matching
built-in exception, so callers can catch either. Problems that do not stop
the computation (a refit that did not converge, a Hessian with odd entries)
are reported as warnings and recorded on the result object instead.
"""


class DSMError(Exception):
    """Base exception for all pydsm errors."""


class ValidationError(DSMError, ValueError):
    """Invalid input data, arguments or configuration.

    Raised for wrong response types, prediction grids and offsets of
    different lengths, unknown option values and deprecated argument names.
    """


class UnsupportedModelError(ValidationError):
    """The model cannot be used for the requested operation.

    Raised for mixed ("gamm") models and for models without a genuine
    detection function, before any numerical work starts.
    """


class ConvergenceWarning(UserWarning):
    """An optimisation stopped before meeting its convergence criterion."""


class NumericalWarning(RuntimeWarning):
    """A numerical derivative or matrix has unexpected values."""
