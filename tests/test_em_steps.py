# tests/test_em_steps.py
import numpy as np
import pytest
import torch

from gmm_em import (
    GMMParams,
    NumericalDegeneracyError,
    compute_precisions,
    compute_precisions_cholesky,
    expectation_step,
    make_params,
    maximization_step,
    reseed_collapsed_components,
)
from gmm_em._em_steps import global_covariance

COV_TYPES = ["full", "diag", "spherical"]


class RandomData:
    """Random GMM data with compact covariance storage."""
    def __init__(self, rng, n_samples=200, n_components=2, n_features=2, covariance_type="full"):
        self.n_samples = int(n_samples)
        self.n_components = int(n_components)
        self.n_features = int(n_features)
        self.covariance_type = covariance_type

        w = rng.rand(self.n_components) + 0.2
        self.weights = w / w.sum()
        self.means = rng.rand(self.n_components, self.n_features) * 50.0
        self.cov = self._make_covariance(rng)
        self.X = self._generate_samples(rng)

    def _make_covariance(self, rng):
        K, D = self.n_components, self.n_features

        # variance range ~ [0.25, 2.25)
        def rand_var(shape):
            return (0.5 + rng.rand(*shape)) ** 2

        if self.covariance_type == "diag":
            return rand_var((K, D))
        if self.covariance_type == "spherical":
            return rand_var((K,))

        covs = []
        for _ in range(K):
            A = rng.randn(D, D)
            C = A @ A.T
            C /= np.trace(C) / D
            C += 0.1 * np.eye(D)
            covs.append(C)
        return np.stack(covs, axis=0)

    def _generate_samples(self, rng):
        K, D = self.n_components, self.n_features
        labels = rng.choice(K, size=self.n_samples, p=self.weights)
        z = rng.randn(self.n_samples, D)

        if self.covariance_type == "full":
            L = np.linalg.cholesky(self.cov)  # (K,D,D)
            noise = np.einsum("nde,ne->nd", L[labels], z)
        elif self.covariance_type == "diag":
            noise = z * np.sqrt(self.cov[labels])
        else:
            noise = z * np.sqrt(self.cov[labels])[:, None]
        return self.means[labels] + noise

    def params(self):
        return make_params(
            torch.from_numpy(self.weights),
            torch.from_numpy(self.means),
            torch.from_numpy(self.cov),
            self.covariance_type,
        )

    def tensor(self):
        return torch.from_numpy(self.X)


def _em_iteration(X, params, reg_covar=1e-6):
    log_prob_norm, log_resp = expectation_step(X, params)
    weights, means, cov, nk = maximization_step(X, log_resp, params.cov_type, reg_covar=reg_covar)
    return float(log_prob_norm.sum()), make_params(weights, means, cov, params.cov_type), nk


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_monotonic_likelihood(covariance_type):
    """EM never decreases the dataset log-likelihood."""
    data = RandomData(np.random.RandomState(3), n_samples=200, n_components=2, covariance_type=covariance_type)
    X = data.tensor()

    # start away from the truth so there is something to climb
    params = make_params(
        torch.tensor([0.5, 0.5], dtype=torch.float64),
        torch.from_numpy(data.means) + 3.0,
        torch.from_numpy(data.cov) * 4.0,
        covariance_type,
    )

    likelihoods = []
    for _ in range(15):
        ll, params, _ = _em_iteration(X, params, reg_covar=0.0)
        likelihoods.append(ll)

    for i in range(1, len(likelihoods)):
        assert likelihoods[i] >= likelihoods[i - 1] - 1e-8 * abs(likelihoods[i - 1]), \
            f"[{covariance_type}] decreased at iter {i}: {likelihoods[i - 1]} -> {likelihoods[i]}"


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_responsibilities_sum_to_one(covariance_type):
    data = RandomData(np.random.RandomState(11), n_samples=50, n_components=3, covariance_type=covariance_type)

    _, log_resp = expectation_step(data.tensor(), data.params())
    resp_sums = log_resp.exp().sum(dim=1)
    assert torch.allclose(resp_sums, torch.ones_like(resp_sums), atol=1e-6)


def test_log_likelihood_is_row_logsumexp():
    data = RandomData(np.random.RandomState(5), n_samples=30, n_components=2, covariance_type="diag")
    X, params = data.tensor(), data.params()

    log_prob_norm, _ = expectation_step(X, params)

    dens = torch.zeros(X.shape[0], dtype=torch.float64)
    for k in range(2):
        mvn = torch.distributions.MultivariateNormal(
            params.means[k], covariance_matrix=torch.diag(params.cov[k])
        )
        dens += params.weights[k] * mvn.log_prob(X).exp()
    assert torch.allclose(log_prob_norm, dens.log(), atol=1e-8)


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_mstep_shapes_and_weights(covariance_type):
    data = RandomData(np.random.RandomState(8), n_samples=120, n_components=3, n_features=4,
                      covariance_type=covariance_type)
    _, log_resp = expectation_step(data.tensor(), data.params())
    weights, means, cov, nk = maximization_step(data.tensor(), log_resp, covariance_type)

    expected_cov_shape = {"full": (3, 4, 4), "diag": (3, 4), "spherical": (3,)}[covariance_type]
    assert weights.shape == (3,)
    assert means.shape == (3, 4)
    assert cov.shape == expected_cov_shape
    assert nk.shape == (3,)
    assert torch.isclose(weights.sum(), torch.tensor(1.0, dtype=torch.float64))
    assert (weights >= 0).all()


def test_full_covariance_is_symmetric_positive_definite():
    data = RandomData(np.random.RandomState(21), n_samples=300, n_components=2, n_features=5)
    _, log_resp = expectation_step(data.tensor(), data.params())
    _, _, cov, _ = maximization_step(data.tensor(), log_resp, "full")

    assert torch.equal(cov, cov.transpose(-1, -2))
    assert (torch.linalg.eigvalsh(cov) > 0).all()


def test_mstep_matches_weighted_statistics():
    """Hard responsibilities reduce to per-cluster sample statistics."""
    X = torch.tensor([[0.0, 0.0], [2.0, 0.0], [0.0, 2.0], [10.0, 10.0], [12.0, 10.0]], dtype=torch.float64)
    resp = torch.tensor([[1, 0], [1, 0], [1, 0], [0, 1], [0, 1]], dtype=torch.float64)
    log_resp = torch.log(resp.clamp_min(torch.finfo(torch.float64).tiny))

    weights, means, cov, nk = maximization_step(X, log_resp, "full", reg_covar=0.0)

    assert torch.allclose(nk, torch.tensor([3.0, 2.0], dtype=torch.float64))
    assert torch.allclose(weights, torch.tensor([0.6, 0.4], dtype=torch.float64))
    assert torch.allclose(means[0], X[:3].mean(dim=0))
    assert torch.allclose(means[1], X[3:].mean(dim=0))
    diff = X[:3] - X[:3].mean(dim=0)
    assert torch.allclose(cov[0], diff.T @ diff / 3.0)


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_precision_computation(covariance_type):
    """precision = inverse covariance."""
    if covariance_type == "diag":
        cov = torch.tensor([[2.0, 4.0], [1.0, 3.0], [0.5, 2.5]], dtype=torch.float64)
        expected = 1.0 / cov
    elif covariance_type == "spherical":
        cov = torch.tensor([2.0, 4.0, 0.5], dtype=torch.float64)
        expected = torch.tensor([0.5, 0.25, 2.0], dtype=torch.float64)
    else:
        cov = torch.tensor([[[2.0, 0.5], [0.5, 3.0]],
                            [[4.0, 0.0], [0.0, 1.0]],
                            [[1.5, -0.3], [-0.3, 2.0]]], dtype=torch.float64)
        expected = torch.linalg.inv(cov)

    prec_chol = compute_precisions_cholesky(cov, covariance_type)
    computed = compute_precisions(prec_chol, covariance_type)

    assert torch.allclose(computed, expected, atol=1e-10), \
        f"[{covariance_type}] Precision mismatch:\nComputed:\n{computed}\nExpected:\n{expected}"


def test_single_component():
    data = RandomData(np.random.RandomState(2), n_samples=100, n_components=1, n_features=3,
                      covariance_type="diag")
    _, log_resp = expectation_step(data.tensor(), data.params())
    resp = log_resp.exp()
    assert resp.shape == (100, 1)
    assert torch.allclose(resp, torch.ones_like(resp))


def test_high_dimensional():
    """D >> K stays finite over several iterations."""
    data = RandomData(np.random.RandomState(4), n_samples=100, n_components=2, n_features=20,
                      covariance_type="diag")
    X, params = data.tensor(), data.params()

    for _ in range(5):
        _, params, _ = _em_iteration(X, params)
        assert torch.isfinite(params.means).all()
        assert torch.isfinite(params.cov).all()
        assert (params.cov > 0).all()


def test_nearly_empty_cluster():
    """A small far cluster keeps its weight and variance."""
    g = torch.Generator().manual_seed(42)
    X1 = torch.randn(95, 2, generator=g, dtype=torch.float64)
    X2 = torch.randn(5, 2, generator=g, dtype=torch.float64) + 20.0
    X = torch.cat([X1, X2], dim=0)

    params = make_params(
        torch.tensor([0.5, 0.5], dtype=torch.float64),
        torch.tensor([[0.0, 0.0], [20.0, 20.0]], dtype=torch.float64),
        torch.ones(2, 2, dtype=torch.float64),
        "diag",
    )
    for _ in range(3):
        _, params, nk = _em_iteration(X, params)
        assert (params.cov[1] > 1e-6).all(), "Small cluster variance collapsed"
        assert params.weights[1] > 0.04
        assert nk[1] > 4.0


def test_identical_samples():
    """All samples at one point: variance sits at the regularization floor."""
    X = torch.full((50, 2), 5.0, dtype=torch.float64)
    params = make_params(
        torch.tensor([0.5, 0.5], dtype=torch.float64),
        torch.tensor([[4.0, 4.0], [6.0, 6.0]], dtype=torch.float64),
        torch.ones(2, 2, dtype=torch.float64),
        "diag",
    )
    _, log_resp = expectation_step(X, params)
    _, means, cov, _ = maximization_step(X, log_resp, "diag", reg_covar=1e-3)

    assert torch.allclose(means[0], torch.tensor([5.0, 5.0], dtype=torch.float64), atol=1e-6)
    assert torch.allclose(cov, torch.full_like(cov, 1e-3))


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_extreme_separations(covariance_type):
    """Clusters 1000 units apart do not overflow the E-step."""
    g = torch.Generator().manual_seed(0)
    X1 = torch.randn(100, 2, generator=g, dtype=torch.float64) * 0.1
    X2 = torch.randn(100, 2, generator=g, dtype=torch.float64) * 0.1 + 1000.0
    X = torch.cat([X1, X2], dim=0)

    data = RandomData(np.random.RandomState(9), n_samples=10, n_components=2, covariance_type=covariance_type)
    _, log_resp = expectation_step(X, data.params())
    resp = log_resp.exp()
    assert torch.isfinite(resp).all(), "Responsibilities contain NaN/Inf"
    assert torch.allclose(resp.sum(dim=1), torch.ones(200, dtype=torch.float64), atol=1e-6)


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_collapsed_component_is_reseeded(covariance_type):
    X = torch.tensor([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [5.0, 5.0], [6.0, 5.0], [30.0, -4.0]],
                     dtype=torch.float64)
    resp = torch.zeros(6, 3, dtype=torch.float64)
    resp[:3, 0] = 1.0
    resp[3:, 1] = 1.0
    log_resp = torch.log(resp.clamp_min(torch.finfo(torch.float64).tiny))

    weights, means, cov, nk = maximization_step(X, log_resp, covariance_type)
    assert nk[2] < 1e-3

    residual = torch.cdist(X, means[:2]).min(dim=1).values
    weights, means, cov, reseeded = reseed_collapsed_components(
        X, weights, means, cov, nk, residual, 1e-3, covariance_type, 1e-6
    )

    assert reseeded == [2]
    assert torch.equal(means[2], X[5]), "Reseed should pick the worst explained row"
    assert torch.allclose(cov[2], global_covariance(X, covariance_type, 1, 1e-6)[0])
    assert torch.isclose(weights.sum(), torch.tensor(1.0, dtype=torch.float64))
    assert torch.isclose(weights[2], torch.tensor((1.0 / 6) / (1.0 + 1.0 / 6), dtype=torch.float64))
    assert isinstance(make_params(weights, means, cov, covariance_type), GMMParams)


def test_no_reseed_when_all_components_have_mass():
    data = RandomData(np.random.RandomState(1), n_samples=60, n_components=2)
    log_prob_norm, log_resp = expectation_step(data.tensor(), data.params())
    weights, means, cov, nk = maximization_step(data.tensor(), log_resp, "full")

    out = reseed_collapsed_components(data.tensor(), weights, means, cov, nk, -log_prob_norm,
                                      1e-3, "full", 1e-6)
    assert out[3] == []
    assert out[1] is means


@pytest.mark.parametrize("covariance_type", COV_TYPES)
def test_degenerate_covariance_raises(covariance_type):
    K, D = 2, 2
    weights = torch.tensor([0.5, 0.5], dtype=torch.float64)
    means = torch.zeros(K, D, dtype=torch.float64)
    if covariance_type == "full":
        cov = torch.zeros(K, D, D, dtype=torch.float64)
    elif covariance_type == "diag":
        cov = torch.tensor([[1.0, 1.0], [1.0, 0.0]], dtype=torch.float64)
    else:
        cov = torch.tensor([1.0, -1.0], dtype=torch.float64)

    with pytest.raises(NumericalDegeneracyError):
        make_params(weights, means, cov, covariance_type)


def test_non_finite_means_raise():
    with pytest.raises(NumericalDegeneracyError):
        make_params(
            torch.tensor([1.0], dtype=torch.float64),
            torch.tensor([[float("nan")]], dtype=torch.float64),
            torch.ones(1, 1, 1, dtype=torch.float64),
            "full",
        )
