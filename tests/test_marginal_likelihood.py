"""Tests for marginal-likelihood estimators (bridge sampling and Laplace).

An unnormalized Gaussian density ``exp(c - (x - m)^T A (x - m) / 2)`` has
the closed-form integral ``c + d/2 log(2 pi) - 1/2 log|A|``; the Laplace
approximation is exact for it and bridge sampling with a normal proposal is
nearly so.
"""

import jax.numpy as jnp
import numpy as np
import pytest
from numpyro.infer.util import log_density as numpyro_log_density

from logoverse.mc import (
    LaplaceApproximationError,
    bridge_sampling,
    laplace_approximation,
    unconstrained_draws,
    unconstrained_log_density,
)
from logoverse.models import build_model, model_args
from logoverse.models.config import ModelSpec


# --------------------------------------------------------------------------
# Fixtures
# --------------------------------------------------------------------------


@pytest.fixture
def gaussian_target():
    A = np.array([[2.0, 0.3, 0.0], [0.3, 1.0, 0.2], [0.0, 0.2, 0.5]])
    mean = np.array([1.0, -2.0, 0.5])
    c = 3.0
    logml = c + 1.5 * np.log(2.0 * np.pi) - 0.5 * np.linalg.slogdet(A)[1]
    return A, mean, c, logml


# --------------------------------------------------------------------------
# Bridge sampling
# --------------------------------------------------------------------------


def test_bridge_sampling_gaussian(gaussian_target):
    A, mean, c, logml = gaussian_target

    def log_density(X):
        diff = np.asarray(X) - mean
        return c - 0.5 * np.einsum("ni,ij,nj->n", diff, A, diff)

    rng = np.random.default_rng(0)
    draws = rng.multivariate_normal(mean, np.linalg.inv(A), size=4000)
    result = bridge_sampling(log_density, draws, seed=1)

    assert result["converged"]
    assert result["logml"] == pytest.approx(logml, abs=0.02)
    assert 0.0 <= result["re2"] < 0.01


def test_bridge_sampling_warns_without_convergence(gaussian_target):
    A, mean, c, _ = gaussian_target

    def log_density(X):
        diff = np.asarray(X) - mean
        return c - 0.5 * np.einsum("ni,ij,nj->n", diff, A, diff)

    rng = np.random.default_rng(2)
    draws = rng.multivariate_normal(mean, np.linalg.inv(A), size=200)
    with pytest.warns(RuntimeWarning, match="did not converge"):
        result = bridge_sampling(log_density, draws, max_iter=1, tol=0.0)
    assert not result["converged"]
    assert result["n_iter"] == 1


def test_bridge_sampling_needs_draw_matrix():
    with pytest.raises(ValueError, match="at least 4 draws"):
        bridge_sampling(lambda X: np.zeros(len(X)), np.zeros((3, 2)))


# --------------------------------------------------------------------------
# Laplace approximation
# --------------------------------------------------------------------------


def test_laplace_exact_for_gaussian(gaussian_target):
    A, mean, c, logml = gaussian_target
    A_j, mean_j = jnp.asarray(A), jnp.asarray(mean)

    def log_density(x):
        diff = x - mean_j
        return c - 0.5 * diff @ A_j @ diff

    result = laplace_approximation(log_density, 3)
    assert result["converged"]
    assert result["logml"] == pytest.approx(logml, rel=1e-6)
    np.testing.assert_allclose(result["mode"], mean, atol=1e-4)
    np.testing.assert_allclose(result["cov"], np.linalg.inv(A), rtol=1e-6)
    assert result["log_density_at_mode"] == pytest.approx(c, abs=1e-8)


def test_laplace_rejects_bad_init():
    with pytest.raises(ValueError, match="init has shape"):
        laplace_approximation(lambda x: -jnp.sum(x**2), 2, init=np.zeros(3))


def test_laplace_flat_optimum_raises():
    # Zero curvature at the optimum: the Gaussian approximation is undefined
    with pytest.raises(LaplaceApproximationError):
        laplace_approximation(lambda x: -x[0] ** 4, 1, init=np.zeros(1))


# --------------------------------------------------------------------------
# Unconstrained density of a model
# --------------------------------------------------------------------------


def _gaussian_spec():
    return ModelSpec(response="y", group="subject", family="gaussian")


def test_unconstrained_log_density_dimension(toy_data):
    density = unconstrained_log_density(_gaussian_spec(), toy_data)
    # b_Intercept, sd_group, sigma and three group intercepts
    assert density.dim == 6
    assert np.isfinite(float(density.fn(jnp.asarray(density.init))))
    batch = np.stack([density.init, density.init + 0.1])
    assert density.batched(jnp.asarray(batch)).shape == (2,)


def test_unconstrained_density_includes_jacobian(toy_data):
    spec = _gaussian_spec()
    samples = {
        "b_Intercept": np.array([1.0, 0.5]),
        "sd_group": np.array([0.7, 1.3]),
        "sigma": np.array([1.1, 0.9]),
        "z_group": np.array([[0.1, -0.2, 0.3], [0.0, 0.4, -0.5]]),
    }
    density = unconstrained_log_density(spec, toy_data)
    draws = unconstrained_draws(spec, toy_data, samples)
    assert draws.shape == (2, density.dim)

    model = build_model(spec)
    kwargs = model_args(toy_data, spec)
    for s in range(2):
        params = {k: jnp.asarray(v[s]) for k, v in samples.items()}
        log_joint, _ = numpyro_log_density(model, (), kwargs, params)
        # Positive parameters are exp-transformed: log-Jacobian log(value)
        jacobian = np.log(samples["sd_group"][s]) + np.log(samples["sigma"][s])
        assert float(density.fn(jnp.asarray(draws[s]))) == pytest.approx(
            float(log_joint) + jacobian, rel=1e-8
        )


def test_unconstrained_density_with_categorical_covariate(toy_data):
    spec = ModelSpec(
        response="y", group="subject", family="gaussian", covariates=("arm",)
    )
    density = unconstrained_log_density(spec, toy_data)
    # b_Intercept, two dummy coefficients, sd_group, sigma, three intercepts
    assert density.dim == 8
    assert np.isfinite(float(density.fn(jnp.asarray(density.init))))
