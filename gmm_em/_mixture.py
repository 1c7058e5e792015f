# gmm_em/_mixture.py
"""Gaussian mixture clustering fitted with Expectation-Maximization.

Lifecycle of an ExpectationMaximization instance:
- construction validates the configuration; n_components < 1 raises
  InsufficientComponentsError and no instance exists,
- CONFIGURED: no parameters yet, predict raises NoTrainingDataError,
- FITTED: parameters published by the last successful fit.

A fit builds all parameters locally and publishes them only at the end, so any
error (insufficient data, numerical degeneracy, cancellation) leaves the
previous state untouched.

Component indices are arbitrary (label switching): two fits of the same data
can return the same clusters in a different order unless they share an integer
random_state. Only consistency within one fitted model is guaranteed.

Exposed attributes after fit:
- weights_, means_, covariances_, precisions_cholesky_, precisions_ (copies)
- log_likelihoods_ (total log-likelihood per iteration, from the last reseed on), lower_bound_
- converged_, n_iter_, n_features_in_
"""

from __future__ import annotations

import enum
import logging
import numbers
import threading
import warnings
from typing import List, Optional, Tuple, Union

import numpy as np
import torch
from sklearn.exceptions import ConvergenceWarning

from ._convergence import ConvergenceMonitor
from ._em_steps import (
    expectation_step,
    maximization_step,
    reseed_collapsed_components,
)
from ._gaussian import check_cov_type, compute_precisions
from ._initialization import INIT_METHODS, initialize_parameters
from ._params import GMMParams, make_params
from .errors import (
    DimensionMismatchError,
    FitCancelledError,
    InsufficientComponentsError,
    InsufficientDataError,
    NoTrainingDataError,
    NumericalDegeneracyError,
)

logger = logging.getLogger(__name__)

ArrayLike = Union[torch.Tensor, np.ndarray, list]
RandomState = Union[None, int, torch.Generator]


class ModelState(enum.Enum):
    CONFIGURED = "configured"
    FITTED = "fitted"


class ExpectationMaximization:
    """Gaussian mixture clustering with a fixed number of components."""

    def __init__(
        self,
        n_components: int,
        covariance_type: str = "full",
        tol: float = 1e-3,
        rtol: float = 0.0,
        reg_covar: float = 1e-6,
        max_iter: int = 100,
        n_init: int = 1,
        init_params: str = "kmeans",
        min_component_mass: float = 1e-3,
        warm_start: bool = False,
        random_state: RandomState = None,
        device=None,
        dtype=None,
        kmeans_iter: int = 10,
        means_init: Optional[torch.Tensor] = None,
        weights_init: Optional[torch.Tensor] = None,
    ) -> None:
        if isinstance(n_components, bool) or not isinstance(n_components, numbers.Integral):
            raise ValueError(f"n_components must be an integer, got {n_components!r}")
        if n_components < 1:
            raise InsufficientComponentsError(f"n_components must be at least 1, got {n_components}")
        check_cov_type(covariance_type)
        if tol < 0 or rtol < 0:
            raise ValueError("tol and rtol must be non-negative")
        if reg_covar < 0:
            raise ValueError("reg_covar must be non-negative")
        if max_iter <= 0:
            raise ValueError("max_iter must be positive")
        if n_init <= 0:
            raise ValueError("n_init must be positive")
        if min_component_mass < 0:
            raise ValueError("min_component_mass must be non-negative")
        if init_params not in INIT_METHODS:
            raise ValueError(f"init_params must be one of {INIT_METHODS}, got {init_params!r}")
        if random_state is not None and not isinstance(random_state, (int, torch.Generator)):
            raise ValueError("random_state must be None, an int or a torch.Generator")

        self.n_components = int(n_components)
        self.covariance_type = covariance_type
        self.tol = tol
        self.rtol = rtol
        self.reg_covar = reg_covar
        self.max_iter = max_iter
        self.n_init = n_init
        self.init_params = init_params
        self.min_component_mass = min_component_mass
        self.warm_start = warm_start
        self.random_state = random_state
        self.device = device
        self.dtype = dtype
        self.kmeans_iter = kmeans_iter
        self.means_init = means_init
        self.weights_init = weights_init

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.lower_bound_: float = float("-inf")
        self.log_likelihoods_: List[float] = []
        self.n_features_in_: Optional[int] = None

        self._params: Optional[GMMParams] = None

    # -----------------------
    # State
    # -----------------------

    @property
    def state(self) -> ModelState:
        return ModelState.CONFIGURED if self._params is None else ModelState.FITTED

    def _require_fitted(self) -> GMMParams:
        if self._params is None:
            raise NoTrainingDataError("This model has not been fitted yet; call fit() first.")
        return self._params

    @property
    def params(self) -> GMMParams:
        return self._require_fitted()

    @property
    def weights_(self) -> torch.Tensor:
        return self._require_fitted().weights.clone()

    @property
    def means_(self) -> torch.Tensor:
        return self._require_fitted().means.clone()

    @property
    def covariances_(self) -> torch.Tensor:
        return self._require_fitted().cov.clone()

    @property
    def precisions_cholesky_(self) -> torch.Tensor:
        return self._require_fitted().prec_chol.clone()

    @property
    def precisions_(self) -> torch.Tensor:
        p = self._require_fitted()
        return compute_precisions(p.prec_chol, p.cov_type)

    # -----------------------
    # Input handling
    # -----------------------

    def _validate_data(self, X: ArrayLike, like: Optional[GMMParams] = None) -> torch.Tensor:
        """Check X is a finite non-empty matrix and move it to the working dtype and device.

        With `like`, X follows the fitted parameters so prediction input of any
        numeric dtype works against the model.
        """
        if not isinstance(X, torch.Tensor):
            X = torch.as_tensor(np.asarray(X))
        if X.dim() != 2:
            raise ValueError(f"Expected a 2-D (n_samples, n_features) matrix, got shape {tuple(X.shape)}")
        if X.shape[0] == 0 or X.shape[1] == 0:
            raise ValueError(f"Expected a non-empty matrix, got shape {tuple(X.shape)}")

        if like is not None:
            X = X.to(dtype=like.means.dtype, device=like.means.device)
        elif self.dtype is not None:
            X = X.to(self.dtype)
        elif not X.is_floating_point():
            X = X.to(torch.float64)
        if like is None and self.device is not None:
            X = X.to(self.device)

        if not torch.isfinite(X).all():
            raise ValueError("Input contains NaN or infinity")
        return X

    def _check_features(self, X: torch.Tensor) -> None:
        if X.shape[1] != self.n_features_in_:
            raise DimensionMismatchError(
                f"X has {X.shape[1]} features, but the model was fitted with {self.n_features_in_}"
            )

    def _make_generator(self) -> torch.Generator:
        if isinstance(self.random_state, torch.Generator):
            return self.random_state
        g = torch.Generator()
        if self.random_state is None:
            g.seed()
        else:
            g.manual_seed(int(self.random_state))
        return g

    # -----------------------
    # EM loop
    # -----------------------

    @torch.no_grad()
    def _run_em(
        self,
        X: torch.Tensor,
        p: GMMParams,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[GMMParams, List[float], int, bool, float, torch.Tensor]:
        monitor = ConvergenceMonitor(self.tol, self.rtol, n_samples=X.shape[0])
        converged = False
        n_iter = 0
        # each component may be reseeded once per run; the trace restarts there
        reseeded_before: set = set()
        trace_start = 0

        for n_iter in range(1, self.max_iter + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise FitCancelledError(f"Fit cancelled before iteration {n_iter}")

            log_prob_norm, log_resp = expectation_step(X, p)
            weights, means, cov, nk = maximization_step(
                X, log_resp, self.covariance_type, reg_covar=self.reg_covar
            )
            weights, means, cov, reseeded = reseed_collapsed_components(
                X, weights, means, cov, nk, -log_prob_norm,
                self.min_component_mass, self.covariance_type, self.reg_covar,
            )
            repeated = sorted(reseeded_before.intersection(reseeded))
            if repeated:
                raise NumericalDegeneracyError(
                    f"Component(s) {repeated} collapsed again after being reseeded at iteration "
                    f"{n_iter}; the data probably has fewer distinct points than n_components."
                )
            reseeded_before.update(reseeded)
            p = make_params(weights, means, cov, self.covariance_type)

            stop = monitor.update(float(log_prob_norm.sum().item()))
            if reseeded:
                monitor.restart()
                trace_start = len(monitor.history)
                continue
            if stop:
                converged = True
                break

        # final E-step so fit_predict agrees with predict
        log_prob_norm, log_resp = expectation_step(X, p)
        history = monitor.history[trace_start:]
        return p, history, n_iter, converged, float(log_prob_norm.sum().item()), log_resp

    def _fit(self, X: ArrayLike, cancel_event: Optional[threading.Event]) -> torch.Tensor:
        X = self._validate_data(X)
        N, D = X.shape
        if N < self.n_components:
            raise InsufficientDataError(
                f"Need at least n_components={self.n_components} samples, got {N}"
            )

        warm = self.warm_start and self._params is not None and self._params.n_features == D
        n_init = 1 if warm else self.n_init
        generator = self._make_generator()

        best = None
        for init in range(n_init):
            if warm:
                start = self._params
            else:
                start = initialize_parameters(
                    X,
                    self.n_components,
                    self.init_params,
                    self.covariance_type,
                    self.reg_covar,
                    self.min_component_mass,
                    generator,
                    kmeans_iter=self.kmeans_iter,
                    means_init=self.means_init,
                    weights_init=self.weights_init,
                )
            result = self._run_em(X, start, cancel_event)
            _, _, n_iter, converged, final_ll, _ = result
            logger.debug(
                "init %d/%d: %d iterations, converged=%s, log-likelihood %.6f",
                init + 1, n_init, n_iter, converged, final_ll,
            )
            if best is None or final_ll > best[4]:
                best = result

        params, history, n_iter, converged, final_ll, log_resp = best

        if converged:
            logger.info("EM converged after %d iterations (log-likelihood %.6f)", n_iter, final_ll)
        else:
            warnings.warn(
                f"Best of {n_init} initialization(s) did not converge after {n_iter} iterations. "
                "Try different init parameters, or increase max_iter, tol or reg_covar.",
                ConvergenceWarning,
                stacklevel=3,
            )

        # publish everything at once
        self._params = params
        self.n_features_in_ = D
        self.log_likelihoods_ = list(history)
        self.lower_bound_ = final_ll
        self.n_iter_ = n_iter
        self.converged_ = converged
        return log_resp

    # -----------------------
    # Public API
    # -----------------------

    def fit(self, X: ArrayLike, cancel_event: Optional[threading.Event] = None) -> "ExpectationMaximization":
        """Estimate mixture parameters from X (n_samples, n_features).

        `cancel_event` is polled between iterations; when set, the fit stops
        with FitCancelledError and the previous parameters stay in place.
        """
        self._fit(X, cancel_event)
        return self

    def fit_predict(self, X: ArrayLike, cancel_event: Optional[threading.Event] = None) -> torch.Tensor:
        """Fit, then label X with the final parameters."""
        return torch.argmax(self._fit(X, cancel_event), dim=1)

    @torch.no_grad()
    def predict_proba(self, X: ArrayLike) -> torch.Tensor:
        """Posterior responsibilities (N, K)."""
        p = self._require_fitted()
        X = self._validate_data(X, like=p)
        self._check_features(X)
        _, log_resp = expectation_step(X, p)
        return log_resp.exp()

    @torch.no_grad()
    def predict(self, X: ArrayLike) -> torch.Tensor:
        """Index of the most responsible component per row; ties go to the lowest index."""
        p = self._require_fitted()
        X = self._validate_data(X, like=p)
        self._check_features(X)
        _, log_resp = expectation_step(X, p)
        return torch.argmax(log_resp, dim=1)

    @torch.no_grad()
    def score_samples(self, X: ArrayLike) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        p = self._require_fitted()
        X = self._validate_data(X, like=p)
        self._check_features(X)
        log_prob_norm, _ = expectation_step(X, p)
        return log_prob_norm

    def score(self, X: ArrayLike) -> float:
        """Mean per-sample log-likelihood."""
        return float(self.score_samples(X).mean().item())

    @torch.no_grad()
    def sample(self, n_samples: int, random_state: RandomState = None) -> Tuple[torch.Tensor, torch.Tensor]:
        """Draw samples from the fitted mixture.

        Returns:
          X: (n_samples, D)
          labels: (n_samples,)
        """
        p = self._require_fitted()
        if n_samples <= 0:
            raise ValueError("n_samples must be positive")

        if isinstance(random_state, torch.Generator):
            g = random_state
        else:
            g = torch.Generator()
            if random_state is None:
                g.seed()
            else:
                g.manual_seed(int(random_state))

        K, D = p.means.shape
        labels = torch.multinomial(p.weights.cpu(), n_samples, replacement=True, generator=g)
        z = torch.randn((n_samples, D), generator=g, dtype=p.means.dtype)
        labels = labels.to(p.means.device)
        z = z.to(p.means.device)

        if p.cov_type == "full":
            L = torch.linalg.cholesky(p.cov)  # (K,D,D)
            noise = torch.einsum("nde,ne->nd", L[labels], z)
        elif p.cov_type == "diag":
            noise = z * torch.sqrt(p.cov[labels])
        else:
            noise = z * torch.sqrt(p.cov[labels]).unsqueeze(1)

        return p.means[labels] + noise, labels
