# gmm_em/_gaussian.py
"""Multivariate normal log-densities evaluated through precision Cholesky factors.

Covariance storage formats:
- full:      cov shape (K, D, D)   # full covariance per component
- diag:      cov shape (K, D)      # per-component per-dimension variances
- spherical: cov shape (K,)        # one variance per component

Everything stays in log space: the Mahalanobis term is computed from
y = diff @ P^T with P = inv(L), cov = L L^T, and the log-determinant is the sum
of log diag(P). Nothing is exponentiated here.
"""

from __future__ import annotations

import math

import torch

from .errors import NumericalDegeneracyError

COVARIANCE_TYPES = ("full", "diag", "spherical")

_DEGENERATE_MSG = (
    "Covariance of component(s) {} is not positive-definite. A component has "
    "probably collapsed onto too few points; increase reg_covar or reduce "
    "n_components."
)


def check_cov_type(cov_type: str) -> None:
    if cov_type not in COVARIANCE_TYPES:
        raise ValueError(f"Unknown covariance_type={cov_type!r}")


def _bad_components(mask: torch.Tensor) -> list:
    return torch.nonzero(mask, as_tuple=False).flatten().tolist()


@torch.no_grad()
def compute_precisions_cholesky(cov: torch.Tensor, cov_type: str) -> torch.Tensor:
    """Compute precisions_cholesky from covariances.

    Shapes returned:
    - full:      (K, D, D) lower-triangular, precision_k = P_k^T P_k
    - diag:      (K, D) where entry is 1/sqrt(var)
    - spherical: (K,)   where entry is 1/sqrt(var)

    Raises NumericalDegeneracyError instead of returning NaN/Inf factors.
    """
    check_cov_type(cov_type)

    if cov_type in ("diag", "spherical"):
        flat = cov.reshape(cov.shape[0], -1)
        bad = ~(torch.isfinite(flat).all(dim=1) & (flat > 0).all(dim=1))
        if bad.any():
            raise NumericalDegeneracyError(_DEGENERATE_MSG.format(_bad_components(bad)))
        return 1.0 / torch.sqrt(cov)

    K, D, _ = cov.shape
    finite = torch.isfinite(cov.reshape(K, -1)).all(dim=1)
    if not finite.all():
        raise NumericalDegeneracyError(_DEGENERATE_MSG.format(_bad_components(~finite)))

    L, info = torch.linalg.cholesky_ex(cov)
    if (info != 0).any():
        raise NumericalDegeneracyError(_DEGENERATE_MSG.format(_bad_components(info != 0)))

    eye = torch.eye(D, device=cov.device, dtype=cov.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, eye, upper=False)


@torch.no_grad()
def compute_precisions(prec_chol: torch.Tensor, cov_type: str) -> torch.Tensor:
    """Precisions (inverse covariances) from precisions_cholesky."""
    check_cov_type(cov_type)
    if cov_type == "full":
        return torch.bmm(prec_chol.transpose(-1, -2), prec_chol)
    return prec_chol * prec_chol


def _log_det_cholesky(prec_chol: torch.Tensor, cov_type: str, n_features: int) -> torch.Tensor:
    """0.5 * logdet(precision) per component, shape (K,)."""
    if cov_type == "full":
        return torch.sum(torch.log(torch.diagonal(prec_chol, dim1=1, dim2=2)), dim=1)
    if cov_type == "diag":
        return torch.sum(torch.log(prec_chol), dim=1)
    return n_features * torch.log(prec_chol)


def estimate_log_gaussian_prob(
    X: torch.Tensor,
    means: torch.Tensor,
    prec_chol: torch.Tensor,
    cov_type: str,
) -> torch.Tensor:
    """log N(x_i | mean_k, cov_k) for every row and component, shape (N, K)."""
    check_cov_type(cov_type)
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    if cov_type == "full":
        assert prec_chol.shape == (K, D, D)
        y = torch.einsum("nkd,ked->nke", diff, prec_chol)
    elif cov_type == "diag":
        assert prec_chol.shape == (K, D)
        y = diff * prec_chol.unsqueeze(0)
    else:
        assert prec_chol.shape == (K,)
        y = diff * prec_chol.view(1, K, 1)

    mahal = torch.sum(y * y, dim=2)  # (N,K)
    log_det = _log_det_cholesky(prec_chol, cov_type, D)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det.unsqueeze(0)


@torch.no_grad()
def log_multivariate_normal_density(
    x: torch.Tensor,
    mean: torch.Tensor,
    cov: torch.Tensor,
) -> torch.Tensor:
    """Log-density of one Gaussian at a point (D,) or a batch of points (N, D).

    `cov` is a full (D, D) covariance. Returns a scalar tensor for a single
    point and an (N,) tensor for a batch.
    """
    single = x.dim() == 1
    X = x.unsqueeze(0) if single else x
    if mean.dim() != 1 or cov.shape != (mean.shape[0], mean.shape[0]):
        raise ValueError(
            f"mean must be (D,) and cov (D,D), got {tuple(mean.shape)} and {tuple(cov.shape)}"
        )
    if X.shape[1] != mean.shape[0]:
        raise ValueError(f"x has {X.shape[1]} features, mean has {mean.shape[0]}")

    prec_chol = compute_precisions_cholesky(cov.unsqueeze(0), "full")
    out = estimate_log_gaussian_prob(X, mean.unsqueeze(0), prec_chol, "full")[:, 0]
    return out[0] if single else out
