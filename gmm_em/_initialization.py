# gmm_em/_initialization.py
"""Starting parameters for EM.

Randomness always comes from an explicit torch.Generator so that a given seed
reproduces the same starting point. Random draws happen on the CPU and are then
moved to the data's device.

Initialization options:
- 'kmeans': k-means++ seeding followed by Lloyd iterations
- 'k-means++': k-means++ seeding only (one hard assignment, no refinement)
- 'random': random uniform responsibilities
- 'random_from_data': K distinct rows as means, global covariance for all
- 'scikit_kmeans': labels from sklearn's KMeans
- 'scikit_random': sklearn-style uniform responsibilities from a numpy RandomState

The responsibility-based options derive the parameters with one M-step.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import torch
from sklearn.cluster import KMeans

from ._em_steps import (
    global_covariance,
    maximization_step,
    reseed_collapsed_components,
    safe_log,
)
from ._params import GMMParams, make_params

INIT_METHODS = ("kmeans", "k-means++", "random", "random_from_data", "scikit_kmeans", "scikit_random")


def _cpu_randint(high: int, size: int, generator: torch.Generator) -> torch.Tensor:
    return torch.randint(0, high, (size,), generator=generator)


@torch.no_grad()
def kmeans_plus_plus_init_centroids(X: torch.Tensor, K: int, generator: torch.Generator) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape
    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)

    i0 = int(_cpu_randint(N, 1, generator).item())
    centroids[0] = X[i0]
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total > 0:
            probs = (closest_d2 / total).cpu()
        else:
            # every point already coincides with a centroid
            probs = torch.full((N,), 1.0 / N, dtype=X.dtype)
        idx = int(torch.multinomial(probs, 1, generator=generator).item())
        centroids[k] = X[idx]
        closest_d2 = torch.minimum(closest_d2, torch.sum((X - centroids[k]) ** 2, dim=1))

    return centroids


@torch.no_grad()
def kmeans_lloyd_with_init(
    X: torch.Tensor,
    centroids: torch.Tensor,
    generator: torch.Generator,
    n_iter: int = 10,
) -> torch.Tensor:
    """Run Lloyd iterations from the given centroids. Returns labels (N,)."""
    N, D = X.shape
    K = centroids.shape[0]
    centroids = centroids.clone()

    labels = torch.argmin(torch.cdist(X, centroids), dim=1)
    for _ in range(n_iter):
        counts = torch.zeros((K,), device=X.device, dtype=X.dtype)
        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype)
        counts.scatter_add_(0, labels, torch.ones((N,), device=X.device, dtype=X.dtype))
        sums.scatter_add_(0, labels.unsqueeze(1).expand(N, D), X)

        centroids = sums / counts.clamp_min(1.0).unsqueeze(1)
        empty = counts == 0
        if empty.any():
            rows = _cpu_randint(N, int(empty.sum().item()), generator).to(X.device)
            centroids[empty] = X[rows]

        new_labels = torch.argmin(torch.cdist(X, centroids), dim=1)
        if torch.equal(new_labels, labels):
            break
        labels = new_labels

    return labels


@torch.no_grad()
def _sklearn_resp(X: torch.Tensor, K: int, method: str, generator: torch.Generator) -> torch.Tensor:
    """Responsibilities (N, K) from sklearn KMeans labels or numpy uniforms."""
    N = X.shape[0]
    seed = int(_cpu_randint(2**31 - 1, 1, generator).item())
    X_np = X.cpu().numpy()

    if method == "scikit_kmeans":
        labels = KMeans(n_clusters=K, n_init=1, random_state=seed).fit(X_np).labels_
        resp = np.zeros((N, K), dtype=np.float64)
        resp[np.arange(N), labels] = 1.0
    elif method == "scikit_random":
        resp = np.random.RandomState(seed).uniform(size=(N, K))
        resp /= resp.sum(axis=1)[:, np.newaxis]
    else:
        raise ValueError(f"Unknown sklearn init method: {method}")

    return torch.from_numpy(resp).to(device=X.device, dtype=X.dtype)


@torch.no_grad()
def _params_from_resp(
    X: torch.Tensor,
    resp: torch.Tensor,
    cov_type: str,
    reg_covar: float,
    min_mass: float,
) -> GMMParams:
    weights, means, cov, nk = maximization_step(X, safe_log(resp), cov_type, reg_covar=reg_covar)

    alive = nk >= min_mass
    if alive.any() and not alive.all():
        # distance to the nearest surviving mean
        residual = torch.cdist(X, means[alive]).min(dim=1).values
        weights, means, cov, _ = reseed_collapsed_components(
            X, weights, means, cov, nk, residual, min_mass, cov_type, reg_covar
        )
    return make_params(weights, means, cov, cov_type)


@torch.no_grad()
def initialize_parameters(
    X: torch.Tensor,
    n_components: int,
    init_params: str,
    cov_type: str,
    reg_covar: float,
    min_mass: float,
    generator: torch.Generator,
    kmeans_iter: int = 10,
    means_init: Optional[torch.Tensor] = None,
    weights_init: Optional[torch.Tensor] = None,
) -> GMMParams:
    """Build a valid starting GMMParams for X."""
    N, D = X.shape
    K = n_components

    if means_init is not None:
        means = torch.as_tensor(means_init).to(device=X.device, dtype=X.dtype)
        if means.shape != (K, D):
            raise ValueError(f"means_init must have shape (K,D) = {(K, D)}, got {tuple(means.shape)}")
        if weights_init is None:
            weights = torch.full((K,), 1.0 / K, device=X.device, dtype=X.dtype)
        else:
            weights = torch.as_tensor(weights_init).to(device=X.device, dtype=X.dtype)
            if weights.shape != (K,) or (weights < 0).any() or weights.sum() <= 0:
                raise ValueError("weights_init must be a non-negative (K,) vector with positive sum")
            weights = weights / weights.sum()
        return make_params(weights, means, global_covariance(X, cov_type, K, reg_covar), cov_type)

    if init_params in ("kmeans", "k-means++"):
        centroids = kmeans_plus_plus_init_centroids(X, K, generator)
        if init_params == "kmeans":
            labels = kmeans_lloyd_with_init(X, centroids, generator, n_iter=kmeans_iter)
        else:
            labels = torch.argmin(torch.cdist(X, centroids), dim=1)
        resp = torch.zeros((N, K), device=X.device, dtype=X.dtype)
        resp[torch.arange(N, device=X.device), labels] = 1.0
        return _params_from_resp(X, resp, cov_type, reg_covar, min_mass)

    if init_params == "random":
        resp = torch.rand((N, K), generator=generator, dtype=X.dtype).to(X.device)
        resp = resp / resp.sum(dim=1, keepdim=True)
        return _params_from_resp(X, resp, cov_type, reg_covar, min_mass)

    if init_params in ("scikit_kmeans", "scikit_random"):
        resp = _sklearn_resp(X, K, init_params, generator)
        return _params_from_resp(X, resp, cov_type, reg_covar, min_mass)

    if init_params == "random_from_data":
        idx = torch.randperm(N, generator=generator)[:K].to(X.device)
        means = X[idx].clone()
        weights = torch.full((K,), 1.0 / K, device=X.device, dtype=X.dtype)
        return make_params(weights, means, global_covariance(X, cov_type, K, reg_covar), cov_type)

    raise ValueError(f"init_params must be one of {INIT_METHODS}, got {init_params!r}")
