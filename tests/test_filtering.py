"""Tests for iterative multiverse filtering (logoverse.multiverse.filtering)."""

import numpy as np
import pytest
from pydantic import ValidationError

from logoverse.mc import ModelComparison
from logoverse.multiverse import FilterConfig, filter_multiverse

N = 30
ALTERNATING = np.where(np.arange(N) % 2 == 0, 1.0, -1.0)


@pytest.fixture
def base():
    return np.random.default_rng(0).normal(-1.0, 0.5, N)


@pytest.fixture
def comparison(base):
    """
    - ``best``: reference.
    - ``close``: 1.5 elpd behind, kept by ``min_elpd_diff``.
    - ``noisy``: 12 behind with se_diff ~11, kept by ``se_multiplier``.
    - ``bad``: 30 behind with tiny se_diff, dropped for prediction.
    - ``divergent``: best elpd of all but with divergences.
    """
    pointwise = {
        "best": base,
        "close": base - 0.05,
        "noisy": base - 0.4 + 2.0 * ALTERNATING,
        "bad": base - 1.0 + 0.01 * ALTERNATING,
        "divergent": base + 0.5,
    }
    mc = ModelComparison(
        model_names=list(pointwise),
        n_divergences=np.array([0, 0, 0, 0, 7]),
        max_rhat=np.array([1.0, 1.0, 1.005, 1.0, 1.0]),
    )
    return mc.add_criterion("psis_loo", list(pointwise.values()))


def test_filter_drops_and_keeps(comparison):
    result = filter_multiverse(comparison)
    assert result.converged
    assert result.retained == ["best", "close", "noisy"]
    assert list(result.ranking["model"]) == ["best", "close", "noisy"]
    assert set(result.dropped) == {"bad", "divergent"}


def test_filter_history(comparison):
    result = filter_multiverse(comparison)
    history = result.history.set_index("model")
    assert history.loc["divergent", "step"] == "computational"
    assert "7 divergences" in history.loc["divergent", "reason"]
    assert history.loc["bad", "step"] == "predictive"
    assert (history["round"] == 1).all()
    # A second round confirms the retained set is stable
    assert result.n_rounds == 2


def test_filter_rhat_threshold(comparison):
    result = filter_multiverse(comparison, config=FilterConfig(max_rhat=1.001))
    assert "noisy" not in result.retained
    reason = result.history.set_index("model").loc["noisy", "reason"]
    assert "R-hat" in reason


def test_filter_disabled_checks_keep_divergent_models(comparison):
    config = FilterConfig(max_divergences=None, max_rhat=None)
    result = filter_multiverse(comparison, config=config)
    assert result.retained[0] == "divergent"


def test_filter_bad_pareto_k(base):
    entries = [
        {"elpd_loo_i": base, "k_hat": np.zeros(N), "k_threshold": 0.7,
         "n_bad": 0},
        {"elpd_loo_i": base - 0.01, "k_hat": np.ones(N), "k_threshold": 0.7,
         "n_bad": N},
    ]
    mc = ModelComparison(model_names=["ok", "unstable"]).add_criterion(
        "psis_loo", entries
    )
    assert filter_multiverse(mc).retained == ["ok", "unstable"]
    result = filter_multiverse(mc, config=FilterConfig(max_bad_k=0))
    assert result.retained == ["ok"]
    assert "bad Pareto k" in result.history.loc[0, "reason"]


def test_filter_criterion_override(base):
    mc = ModelComparison(model_names=["a", "b"]).add_criterion(
        "psis_logo", [base, base - 2.0]
    )
    result = filter_multiverse(mc, criterion="psis_logo")
    assert result.retained == ["a"]
    assert result.config.criterion.value == "psis_logo"


def test_filter_missing_criterion(comparison):
    with pytest.raises(RuntimeError, match="has not been computed"):
        filter_multiverse(comparison, criterion="exact_logo")


def test_filter_everything_dropped(base):
    mc = ModelComparison(
        model_names=["a", "b"], n_divergences=np.array([1, 4])
    ).add_criterion("psis_loo", [base, base])
    with pytest.raises(RuntimeError, match="Every model"):
        filter_multiverse(mc)


def test_filter_round_limit_warns(comparison):
    with pytest.warns(RuntimeWarning, match="did not stabilize"):
        result = filter_multiverse(comparison, config=FilterConfig(max_rounds=1))
    assert not result.converged
    assert result.n_rounds == 1


def test_filter_summary(comparison):
    text = filter_multiverse(comparison).summary()
    assert "Multiverse filtering (psis_loo)" in text
    assert "retained : 3" in text
    assert "predictive" in text


def test_filter_config_validation():
    with pytest.raises(ValidationError):
        FilterConfig(min_elpd_diff=-1.0)
    with pytest.raises(ValidationError):
        FilterConfig(criterion="aic")
    with pytest.raises(ValidationError):
        FilterConfig(max_rhat=0.9)
