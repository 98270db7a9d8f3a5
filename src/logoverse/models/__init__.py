"""
logoverse models package.

This package contains the candidate model specification, design matrices, the
NumPyro model builder and the log-likelihood evaluators (conditional and
with latent effects integrated out).
"""

from .config import Criterion, Family, InferenceConfig, ModelSpec, PriorType
from .design import build_design_matrix
from .builder import (
    aux_param_name,
    build_model,
    coefficients,
    linear_predictor,
    model_args,
    observation_distribution,
    register_family,
)
from .log_likelihood import group_log_likelihood, pointwise_log_likelihood
from .integrated import (
    integrated_group_log_likelihood,
    integrated_obs_log_likelihood,
    marginal_group_log_likelihood,
    marginal_obs_log_likelihood,
    thin_draws,
)

__all__ = [
    "Family",
    "PriorType",
    "Criterion",
    "ModelSpec",
    "InferenceConfig",
    "build_design_matrix",
    "aux_param_name",
    "build_model",
    "coefficients",
    "linear_predictor",
    "model_args",
    "observation_distribution",
    "register_family",
    "pointwise_log_likelihood",
    "group_log_likelihood",
    "integrated_obs_log_likelihood",
    "integrated_group_log_likelihood",
    "marginal_obs_log_likelihood",
    "marginal_group_log_likelihood",
    "thin_draws",
]
