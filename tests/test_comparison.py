"""Tests for multi-model comparison (logoverse.mc.results) and exact LOGO
scoring of held-out groups."""

import numpy as np
import pytest
from scipy import stats
from scipy.special import logsumexp

from logoverse.mc import (
    ModelComparison,
    compare_models,
    compute_psis_loo,
    evaluate_criterion,
    exact_logo,
)
from logoverse.models.config import Criterion, ModelSpec


def _gaussian_spec(**kwargs):
    return ModelSpec(response="y", group="subject", family="gaussian", **kwargs)


@pytest.fixture
def pointwise():
    rng = np.random.default_rng(0)
    base = rng.normal(-1.0, 0.4, 40)
    return {
        "good": base,
        "worse": base - 0.3 + rng.normal(0.0, 0.1, 40),
        "worst": base - 1.0 + rng.normal(0.0, 0.1, 40),
    }


@pytest.fixture
def comparison(pointwise):
    mc = ModelComparison(
        model_names=list(pointwise),
        n_divergences=np.array([0, 2, 0]),
        max_rhat=np.array([1.0, 1.02, 1.001]),
    )
    return mc.add_criterion("psis_loo", list(pointwise.values()))


# --------------------------------------------------------------------------
# ModelComparison
# --------------------------------------------------------------------------


def test_rank_orders_best_first(comparison, pointwise):
    table = comparison.rank("psis_loo")
    assert list(table["model"]) == ["good", "worse", "worst"]
    assert table.loc[0, "elpd_diff"] == 0.0
    assert table.loc[0, "se_diff"] == 0.0
    assert table.loc[2, "elpd"] == pytest.approx(np.sum(pointwise["worst"]))
    assert np.all(table["elpd_diff"] <= 0.0)
    assert table["weight"].sum() == pytest.approx(1.0)


def test_rank_difference_standard_error(comparison, pointwise):
    table = comparison.rank(Criterion.PSIS_LOO).set_index("model")
    d = pointwise["worse"] - pointwise["good"]
    assert table.loc["worse", "se_diff"] == pytest.approx(
        np.sqrt(np.sum((d - d.mean()) ** 2))
    )
    assert table.loc["worse", "z_score"] == pytest.approx(
        table.loc["worse", "elpd_diff"] / table.loc["worse", "se_diff"]
    )


def test_rank_carries_mcmc_diagnostics(comparison):
    table = comparison.rank().set_index("model")
    assert table.loc["worse", "n_divergences"] == 2
    assert table.loc["worse", "max_rhat"] == pytest.approx(1.02)
    # Plain arrays carry no Pareto k
    assert table.loc["good", "n_bad_k"] == 0
    assert np.isnan(table.loc["good", "max_k"])
    assert np.isnan(table.loc["good", "p_eff"])


def test_rank_with_psis_results():
    rng = np.random.default_rng(1)
    results = [
        compute_psis_loo(rng.normal(-2.0, 0.3, size=(500, 30))),
        compute_psis_loo(rng.normal(-2.2, 0.3, size=(500, 30))),
    ]
    mc = ModelComparison(model_names=["a", "b"]).add_criterion(
        "psis_loo", results
    )
    table = mc.rank().set_index("model")
    assert table.loc["a", "p_eff"] == pytest.approx(results[0]["p_loo"])
    assert table.loc["a", "max_k"] == pytest.approx(np.max(results[0]["k_hat"]))
    assert "Pareto k diagnostics" in mc.diagnostics("psis_loo", model="a")


def test_missing_criterion_raises(comparison):
    with pytest.raises(RuntimeError, match="has not been computed"):
        comparison.rank("exact_logo")


def test_add_criterion_length_mismatch(comparison):
    with pytest.raises(ValueError, match="Expected 3 entries"):
        comparison.add_criterion("psis_logo", [np.zeros(5)])


def test_unequal_pointwise_lengths_raise():
    mc = ModelComparison(model_names=["a", "b"]).add_criterion(
        "psis_loo", [np.zeros(5), np.zeros(6)]
    )
    with pytest.raises(ValueError, match="same data"):
        mc.rank()


def test_duplicate_model_names_rejected():
    with pytest.raises(ValueError, match="unique"):
        ModelComparison(model_names=["a", "a"])


def test_subset(comparison):
    sub = comparison.subset(["worst", 0])
    assert sub.model_names == ["worst", "good"]
    np.testing.assert_array_equal(sub.n_divergences, [0, 0])
    assert sub.K == 2
    assert list(sub.rank()["model"]) == ["good", "worst"]


def test_subset_errors(comparison):
    with pytest.raises(ValueError, match="not found"):
        comparison.subset(["missing"])
    with pytest.raises(ValueError, match="out of range"):
        comparison.subset([5])
    with pytest.raises(TypeError):
        comparison.subset([1.5])


def test_summary_and_diagnostics_text(comparison):
    assert comparison.summary("psis_loo").startswith(
        "Model Comparison (PSIS_LOO)"
    )
    text = comparison.diagnostics("psis_loo")
    for name in ("good", "worse", "worst"):
        assert name in text
    assert "divergences: 2" in text
    assert repr(comparison) == "ModelComparison(K=3, criteria=['psis_loo'])"


# --------------------------------------------------------------------------
# evaluate_criterion
# --------------------------------------------------------------------------


def test_evaluate_psis_criteria(toy_data, make_fit, gaussian_posterior):
    fit = make_fit(_gaussian_spec(), toy_data, gaussian_posterior)

    loo = evaluate_criterion("psis_loo", fit, toy_data)
    np.testing.assert_allclose(
        loo["elpd_loo_i"], compute_psis_loo(fit.log_lik)["elpd_loo_i"]
    )

    logo = evaluate_criterion(Criterion.PSIS_LOGO, fit, toy_data)
    assert logo["elpd_logo_i"].shape == (toy_data.n_groups,)

    integrated = evaluate_criterion("psis_logo_integrated", fit, toy_data)
    assert integrated["elpd_logo_i"].shape == (toy_data.n_groups,)
    assert "k_hat" in integrated


def test_evaluate_integrated_loo_without_obs_effect(
    toy_data, make_fit, gaussian_posterior
):
    fit = make_fit(_gaussian_spec(), toy_data, gaussian_posterior)
    integrated = evaluate_criterion("psis_loo_integrated", fit, toy_data)
    plain = evaluate_criterion("psis_loo", fit, toy_data)
    np.testing.assert_allclose(integrated["elpd_loo_i"], plain["elpd_loo_i"])


def test_evaluate_unknown_criterion(toy_data, make_fit, gaussian_posterior):
    fit = make_fit(_gaussian_spec(), toy_data, gaussian_posterior)
    with pytest.raises(ValueError, match="Unknown criterion"):
        evaluate_criterion("waic", fit, toy_data)


# --------------------------------------------------------------------------
# Exact LOGO scoring with given refits
# --------------------------------------------------------------------------


def test_exact_logo_scores_held_out_groups(
    toy_data, make_fit, gaussian_posterior
):
    spec = _gaussian_spec()
    refits = {
        label: make_fit(spec, toy_data, gaussian_posterior)
        for label in toy_data.group_labels
    }
    result = exact_logo(spec, toy_data, refits=refits, method="ghq")

    draws = gaussian_posterior
    S = len(draws["b_Intercept"])
    for g, rows in toy_data.obs_idx.items():
        n_g = len(rows)
        log_p = np.array(
            [
                stats.multivariate_normal.logpdf(
                    toy_data.y[rows],
                    mean=np.full(n_g, draws["b_Intercept"][s]),
                    cov=draws["sigma"][s] ** 2 * np.eye(n_g)
                    + draws["sd_group"][s] ** 2,
                )
                for s in range(S)
            ]
        )
        expected = logsumexp(log_p) - np.log(S)
        assert result["elpd_logo_i"][g] == pytest.approx(expected, rel=1e-6)

    assert result["elpd_logo"] == pytest.approx(np.sum(result["elpd_logo_i"]))
    np.testing.assert_array_equal(result["groups"], [0, 1, 2])


def test_exact_logo_missing_refit(toy_data, make_fit, gaussian_posterior):
    spec = _gaussian_spec()
    refits = {"a": make_fit(spec, toy_data, gaussian_posterior)}
    with pytest.raises(ValueError, match="No refit"):
        exact_logo(spec, toy_data, refits=refits)


# --------------------------------------------------------------------------
# compare_models
# --------------------------------------------------------------------------


def test_compare_models(toy_data, make_fit, gaussian_posterior):
    spec_group = _gaussian_spec()
    spec_flat = _gaussian_spec(group_effect=False)
    flat_draws = {
        "b_Intercept": gaussian_posterior["b_Intercept"],
        "sigma": gaussian_posterior["sigma"],
    }
    fits = [
        make_fit(spec_group, toy_data, gaussian_posterior),
        make_fit(spec_flat, toy_data, flat_draws, n_divergences=3),
    ]
    mc = compare_models(fits, toy_data, criteria=("psis_loo", "psis_logo"))

    assert mc.K == 2
    assert mc.criteria == ["psis_loo", "psis_logo"]
    assert mc.model_names == [spec_group.name, spec_flat.name]
    np.testing.assert_array_equal(mc.n_divergences, [0, 3])
    assert mc.specs == [spec_group, spec_flat]
    assert len(mc.rank("psis_logo")) == 2


def test_compare_models_validation(toy_data, make_fit, gaussian_posterior):
    with pytest.raises(ValueError, match="At least one"):
        compare_models([], toy_data)
    fit = make_fit(_gaussian_spec(), toy_data, gaussian_posterior)
    with pytest.raises(ValueError, match="names"):
        compare_models([fit], toy_data, model_names=["a", "b"])
