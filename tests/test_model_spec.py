"""Tests for candidate model and sampler configuration."""

import pytest
from pydantic import ValidationError

from logoverse.models.config import (
    Criterion,
    Family,
    InferenceConfig,
    ModelSpec,
    PriorType,
)


def _spec(**kwargs):
    defaults = dict(response="count", group="patient")
    defaults.update(kwargs)
    return ModelSpec(**defaults)


# --------------------------------------------------------------------------
# Enums
# --------------------------------------------------------------------------


def test_family_is_count():
    assert Family.POISSON.is_count
    assert Family.NEGBINOMIAL.is_count
    assert not Family.GAUSSIAN.is_count


def test_criterion_uses_psis():
    assert Criterion.PSIS_LOGO_INTEGRATED.uses_psis
    assert not Criterion.EXACT_LOGO.uses_psis


# --------------------------------------------------------------------------
# ModelSpec validation
# --------------------------------------------------------------------------


def test_string_options_are_coerced():
    spec = _spec(family="negbinomial", prior="horseshoe")
    assert spec.family is Family.NEGBINOMIAL
    assert spec.prior is PriorType.HORSESHOE


def test_unknown_family_rejected():
    with pytest.raises(ValidationError):
        _spec(family="binomial")


def test_extra_fields_forbidden():
    with pytest.raises(ValidationError):
        _spec(link="log")


def test_repeated_covariates_rejected():
    with pytest.raises(ValidationError, match="Repeated covariates"):
        _spec(covariates=("zAge", "zAge"))


def test_self_interaction_rejected():
    with pytest.raises(ValidationError, match="itself"):
        _spec(interactions=(("zAge", "zAge"),))


def test_repeated_interaction_rejected():
    with pytest.raises(ValidationError, match="Repeated interaction"):
        _spec(interactions=(("zBase", "Trt"), ("Trt", "zBase")))


def test_interaction_with_own_main_effect_rejected():
    with pytest.raises(ValidationError, match="already includes"):
        _spec(covariates=("zBase",), interactions=(("zBase", "Trt"),))


def test_spec_is_frozen():
    spec = _spec()
    with pytest.raises(ValidationError):
        spec.family = Family.GAUSSIAN


# --------------------------------------------------------------------------
# Derived quantities
# --------------------------------------------------------------------------


def test_terms_expand_interactions():
    spec = _spec(covariates=("zAge",), interactions=(("zBase", "Trt"),))
    assert spec.terms == ["zAge", "zBase", "Trt", "zBase:Trt"]
    assert spec.n_terms == 4


def test_formula_and_name():
    spec = _spec(
        covariates=("zAge",),
        interactions=(("zBase", "Trt"),),
        obs_effect=True,
    )
    assert spec.formula == (
        "count ~ zAge + zBase * Trt + (1 | patient) + (1 | obs)"
    )
    assert spec.name == f"{spec.formula} [poisson, normal]"
    assert str(spec) == spec.name


def test_intercept_only_formula():
    spec = _spec(group_effect=False)
    assert spec.formula == "count ~ 1"
    assert spec.n_terms == 0


def test_key_is_stable_and_distinguishes_specs():
    a = _spec(covariates=("zAge",))
    b = _spec(covariates=("zAge",))
    c = _spec(covariates=("zAge",), family="negbinomial")
    assert a.key == b.key
    assert a.key != c.key
    assert len(a.key) == 12


def test_specs_are_hashable():
    assert len({_spec(), _spec(), _spec(obs_effect=True)}) == 2


# --------------------------------------------------------------------------
# InferenceConfig
# --------------------------------------------------------------------------


def test_inference_config_defaults():
    config = InferenceConfig()
    assert config.n_chains == 4
    assert config.total_draws == 4_000


def test_inference_config_validation():
    with pytest.raises(ValidationError):
        InferenceConfig(target_accept_prob=1.5)
    with pytest.raises(ValidationError):
        InferenceConfig(chain_method="threads")
    with pytest.raises(ValidationError):
        InferenceConfig(n_samples=0)
