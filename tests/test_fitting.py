"""End-to-end tests that fit candidate models with NUTS.

These run real MCMC and are skipped unless pytest is called with
``--run-slow``.
"""

import os

import numpy as np
import pytest

from logoverse.mc import (
    bridge_log_marginal,
    bridge_logo,
    compare_models,
    exact_logo,
    laplace_logo,
    refit_without_groups,
)
from logoverse.mcmc import FitResult, fit_model, fit_multiverse
from logoverse.models.config import InferenceConfig, ModelSpec
from logoverse.multiverse import FilterConfig, filter_multiverse

pytestmark = pytest.mark.slow

CONFIG = InferenceConfig(n_samples=300, n_warmup=300, n_chains=2, seed=3)


# ------------------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------------------


@pytest.fixture(scope="module")
def data(small_counts):
    # Six patients keep the number of refits small
    labels = small_counts.group_labels[:6]
    frame = small_counts.frame[small_counts.frame["patient"].isin(labels)]
    return type(small_counts).from_frame(
        frame.reset_index(drop=True), response="count", group="patient"
    )


@pytest.fixture(scope="module")
def spec():
    return ModelSpec(
        response="count",
        group="patient",
        family="poisson",
        covariates=("zBase", "Trt"),
    )


@pytest.fixture(scope="module")
def fit(spec, data):
    return fit_model(spec, data, CONFIG)


# ------------------------------------------------------------------------------
# fit_model / fit_multiverse
# ------------------------------------------------------------------------------


def test_fit_model_shapes(fit, data):
    S = CONFIG.total_draws
    assert isinstance(fit, FitResult)
    assert fit.n_samples == S
    assert fit.log_lik.shape == (S, data.n_obs)
    assert fit.samples["b"].shape == (S, 2)
    assert fit.samples["z_group"].shape == (S, data.n_groups)
    assert fit.group_log_lik(data).shape == (S, data.n_groups)
    assert np.all(np.isfinite(fit.log_lik))


def test_fit_model_summary(fit):
    table = fit.summary()
    assert {"parameter", "mean", "sd", "n_eff", "r_hat"} <= set(table.columns)
    assert "b_Intercept" in set(table["parameter"])
    assert "b[1]" in set(table["parameter"])
    assert fit.max_rhat < 1.1
    assert fit.min_ess > 10
    assert fit.diagnostics_ok(max_rhat=1.1, max_divergences=10)


def test_fit_multiverse_uses_cache(spec, data, tmp_path):
    specs = [spec, spec.model_copy(update={"covariates": ("zBase",)})]
    fits = fit_multiverse(specs, data, CONFIG, n_jobs=1, cache_dir=str(tmp_path))
    assert [f.spec for f in fits] == specs
    assert len(os.listdir(tmp_path)) == 2

    again = fit_multiverse(
        specs, data, CONFIG, n_jobs=1, cache_dir=str(tmp_path)
    )
    for first, second in zip(fits, again):
        np.testing.assert_array_equal(first.log_lik, second.log_lik)


# ------------------------------------------------------------------------------
# LOGO estimators on a real fit
# ------------------------------------------------------------------------------


def test_laplace_logo(spec, data):
    result = laplace_logo(spec, data)
    assert result["elpd_logo_i"].shape == (data.n_groups,)
    assert np.all(np.isfinite(result["elpd_logo_i"]))
    assert result["elpd_logo"] == pytest.approx(np.sum(result["elpd_logo_i"]))


def test_bridge_log_marginal(fit, data):
    result = bridge_log_marginal(fit, data)
    assert np.isfinite(result["logml"])
    assert result["re2"] >= 0.0


def test_refit_based_estimators(spec, data, fit, tmp_path):
    labels = data.group_labels[:2]
    refits = refit_without_groups(
        spec, data, CONFIG, labels=labels, cache_dir=str(tmp_path)
    )
    assert list(refits) == list(labels)
    for label, refit in refits.items():
        assert refit.log_lik.shape[1] == data.drop_group(label).n_obs
        # Full group coding is kept in the refit
        assert refit.samples["z_group"].shape[1] == data.n_groups

    with pytest.raises(ValueError, match="No refit"):
        exact_logo(spec, data, refits=refits)

    all_refits = refit_without_groups(
        spec, data, CONFIG, cache_dir=str(tmp_path)
    )
    exact = exact_logo(spec, data, refits=all_refits)
    bridge = bridge_logo(spec, data, full_fit=fit, refits=all_refits)
    assert exact["elpd_logo_i"].shape == (data.n_groups,)
    assert bridge["elpd_logo_i"].shape == (data.n_groups,)
    # Both estimate the same quantity; allow generous Monte Carlo error
    np.testing.assert_allclose(
        bridge["elpd_logo_i"], exact["elpd_logo_i"], atol=1.5
    )


# ------------------------------------------------------------------------------
# Full pipeline
# ------------------------------------------------------------------------------


def test_compare_and_filter(spec, data, fit):
    flat = spec.model_copy(update={"covariates": ()})
    fits = [fit, fit_model(flat, data, CONFIG)]
    mc = compare_models(fits, data, criteria=("psis_loo", "psis_logo"))
    assert mc.K == 2
    table = mc.rank("psis_logo")
    assert set(table["model"]) == {spec.name, flat.name}

    config = FilterConfig(max_divergences=None, max_rhat=None)
    result = filter_multiverse(mc, criterion="psis_logo", config=config)
    assert 1 <= len(result.retained) <= 2
    assert result.retained[0] == table.loc[0, "model"]
