# gmm_em/_params.py
from __future__ import annotations

from dataclasses import dataclass

import torch

from ._gaussian import compute_precisions_cholesky
from .errors import NumericalDegeneracyError


@dataclass(frozen=True)
class GMMParams:
    """One complete set of mixture parameters.

    Instances are never modified in place; every EM iteration builds a new one,
    so a failure mid-iteration cannot leave a half-updated store behind.
    """

    weights: torch.Tensor    # (K,)
    means: torch.Tensor      # (K, D)
    cov: torch.Tensor        # (K, D, D) | (K, D) | (K,)
    prec_chol: torch.Tensor  # same layout as cov
    cov_type: str

    @property
    def n_components(self) -> int:
        return int(self.means.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.means.shape[1])


@torch.no_grad()
def make_params(weights: torch.Tensor, means: torch.Tensor, cov: torch.Tensor, cov_type: str) -> GMMParams:
    """Bundle parameters together with their precision Cholesky factors.

    Raises NumericalDegeneracyError if any covariance cannot be factorized or
    any parameter is non-finite.
    """
    if not (torch.isfinite(weights).all() and torch.isfinite(means).all()):
        raise NumericalDegeneracyError("Mixture weights or means became non-finite.")
    prec_chol = compute_precisions_cholesky(cov, cov_type)
    return GMMParams(weights=weights, means=means, cov=cov, prec_chol=prec_chol, cov_type=cov_type)
