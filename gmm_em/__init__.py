"""Gaussian mixture clustering with Expectation-Maximization in PyTorch."""

from ._convergence import ConvergenceMonitor
from ._em_steps import expectation_step, maximization_step, reseed_collapsed_components
from ._gaussian import (
    compute_precisions,
    compute_precisions_cholesky,
    estimate_log_gaussian_prob,
    log_multivariate_normal_density,
)
from ._initialization import initialize_parameters
from ._mixture import ExpectationMaximization, ModelState
from ._params import GMMParams, make_params
from .errors import (
    DimensionMismatchError,
    FitCancelledError,
    GMMError,
    InsufficientComponentsError,
    InsufficientDataError,
    LikelihoodDecreaseWarning,
    NoTrainingDataError,
    NumericalDegeneracyError,
)

__all__ = [
    "ConvergenceMonitor",
    "DimensionMismatchError",
    "ExpectationMaximization",
    "FitCancelledError",
    "GMMError",
    "GMMParams",
    "InsufficientComponentsError",
    "InsufficientDataError",
    "LikelihoodDecreaseWarning",
    "ModelState",
    "NoTrainingDataError",
    "NumericalDegeneracyError",
    "compute_precisions",
    "compute_precisions_cholesky",
    "estimate_log_gaussian_prob",
    "expectation_step",
    "initialize_parameters",
    "log_multivariate_normal_density",
    "maximization_step",
    "make_params",
    "reseed_collapsed_components",
]
