# gmm_em/errors.py
"""Exceptions and warnings raised by the EM clustering estimator."""


class GMMError(Exception):
    """Base class for all errors raised by gmm_em."""


class InsufficientComponentsError(GMMError, ValueError):
    """Requested component count is smaller than one."""


class InsufficientDataError(GMMError, ValueError):
    """Fewer observations than components were passed to fit."""


class NoTrainingDataError(GMMError, RuntimeError):
    """The model has not been fitted yet."""


class DimensionMismatchError(GMMError, ValueError):
    """Feature count differs from the one seen at fit time."""


class NumericalDegeneracyError(GMMError, ArithmeticError):
    """A covariance could not be factorized or parameters became non-finite."""


class FitCancelledError(GMMError):
    """The fit was cancelled between two EM iterations."""


class LikelihoodDecreaseWarning(UserWarning):
    """The log-likelihood decreased between two EM iterations."""
