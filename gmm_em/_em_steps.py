# gmm_em/_em_steps.py
"""E-step and M-step of the EM algorithm, plus the collapsed-component policy.

A component whose effective count nk drops below `min_mass` is reseeded rather
than aborting the fit:
- its mean becomes the data row the current model explains worst,
- its covariance becomes the regularized global covariance of the data,
- its weight becomes 1/N, then all weights are renormalized.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import torch

from ._gaussian import check_cov_type, estimate_log_gaussian_prob
from ._params import GMMParams

logger = logging.getLogger(__name__)


def _nk_eps(dtype: torch.dtype) -> float:
    """nk smoothing: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)


def safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _eye_like(D: int, ref: torch.Tensor) -> torch.Tensor:
    return torch.eye(D, device=ref.device, dtype=ref.dtype)


# ---------------------------
# E-step
# ---------------------------

def estimate_weighted_log_prob(X: torch.Tensor, params: GMMParams) -> torch.Tensor:
    """log w_k + log N(x_i | mean_k, cov_k), shape (N, K)."""
    log_prob = estimate_log_gaussian_prob(X, params.means, params.prec_chol, params.cov_type)
    return log_prob + safe_log(params.weights).unsqueeze(0)


@torch.no_grad()
def expectation_step(X: torch.Tensor, params: GMMParams) -> Tuple[torch.Tensor, torch.Tensor]:
    """Return (log_prob_norm, log_resp).

    log_prob_norm has shape (N,) and is the per-sample log-likelihood; its sum
    is the dataset log-likelihood. log_resp has shape (N, K) and each row of
    log_resp.exp() sums to one.
    """
    weighted_log_prob = estimate_weighted_log_prob(X, params)  # (N,K)
    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)
    return log_prob_norm, log_resp


# ---------------------------
# M-step
# ---------------------------

@torch.no_grad()
def maximization_step(
    X: torch.Tensor,
    log_resp: torch.Tensor,
    cov_type: str,
    reg_covar: float = 1e-6,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
    """Re-estimate (weights, means, cov) from responsibilities.

    Also returns nk, the effective count per component, so the caller can
    detect collapsed components.
    """
    check_cov_type(cov_type)
    N, D = X.shape
    assert log_resp.shape[0] == N

    resp = log_resp.exp()  # (N,K)
    nk = resp.sum(dim=0) + _nk_eps(resp.dtype)  # (K,)

    weights = nk / nk.sum()
    means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)
    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    if cov_type == "full":
        cov = torch.einsum("nk,nkd,nke->kde", resp, diff, diff) / nk.view(-1, 1, 1)
        cov = 0.5 * (cov + cov.transpose(-1, -2))
        cov = cov + reg_covar * _eye_like(D, X).unsqueeze(0)
    else:
        var = (resp.unsqueeze(2) * diff * diff).sum(dim=0) / nk.unsqueeze(1)  # (K,D)
        cov = var + reg_covar if cov_type == "diag" else var.mean(dim=1) + reg_covar

    return weights, means, cov, nk


# ---------------------------
# Degenerate components
# ---------------------------

@torch.no_grad()
def global_covariance(X: torch.Tensor, cov_type: str, n_copies: int, reg_covar: float) -> torch.Tensor:
    """Regularized covariance of the whole dataset, repeated n_copies times."""
    N, D = X.shape
    Xc = X - X.mean(dim=0, keepdim=True)
    if cov_type == "full":
        cov = (Xc.T @ Xc) / max(N - 1, 1) + reg_covar * _eye_like(D, X)
        return cov.unsqueeze(0).expand(n_copies, D, D).contiguous()
    var = Xc.var(dim=0, unbiased=False) + reg_covar
    if cov_type == "diag":
        return var.unsqueeze(0).expand(n_copies, D).contiguous()
    return torch.full((n_copies,), float(var.mean()), device=X.device, dtype=X.dtype)


@torch.no_grad()
def reseed_collapsed_components(
    X: torch.Tensor,
    weights: torch.Tensor,
    means: torch.Tensor,
    cov: torch.Tensor,
    nk: torch.Tensor,
    residual: torch.Tensor,
    min_mass: float,
    cov_type: str,
    reg_covar: float,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, List[int]]:
    """Replace components with nk < min_mass.

    `residual` is a per-row score, larger meaning worse explained by the
    current model. Each collapsed component gets a distinct row.
    Returns new (weights, means, cov) and the reseeded component indices.
    """
    collapsed = torch.nonzero(nk < min_mass, as_tuple=False).flatten()
    if collapsed.numel() == 0:
        return weights, means, cov, []

    N = X.shape[0]
    m = collapsed.numel()
    seeds = torch.argsort(residual, descending=True, stable=True)[:m]

    weights = weights.clone()
    means = means.clone()
    cov = cov.clone()

    means[collapsed] = X[seeds]
    cov[collapsed] = global_covariance(X, cov_type, m, reg_covar)
    weights[collapsed] = 1.0 / N
    weights = weights / weights.sum()

    idx = collapsed.tolist()
    logger.warning(
        "Component(s) %s collapsed (effective count below %g); reseeded at rows %s",
        idx, min_mass, seeds.tolist(),
    )
    return weights, means, cov, idx
