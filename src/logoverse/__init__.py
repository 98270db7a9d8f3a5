"""
logoverse: leave-one-group-out cross-validation for multiverse analyses

Fit many candidate Bayesian models of grouped repeated-measurement data with
NumPyro, estimate how well each predicts held-out groups (PSIS, integrated
PSIS, exact refits, bridge sampling and Laplace approximations) and filter
the multiverse down to the models that are computationally sound and
predictively competitive.
"""

import logging

import numpyro

# Marginal likelihoods and Pareto fits need double precision
numpyro.enable_x64()

# Quiet JAX's absl logger
logging.getLogger("absl").setLevel(logging.ERROR)

from . import utils
from . import data_loader
from .data_loader import GroupedData, load_grouped_data, simulate_repeated_counts
from .models.config import Criterion, Family, InferenceConfig, ModelSpec, PriorType
from .mcmc import FitResult, fit_model, fit_multiverse
from .mc import ModelComparison, compare_models
from .multiverse import (
    FilterConfig,
    FilterResult,
    ModelChoices,
    build_model_grid,
    filter_multiverse,
)

__version__ = "0.1.0"

__all__ = [
    "GroupedData",
    "load_grouped_data",
    "simulate_repeated_counts",
    "Family",
    "PriorType",
    "Criterion",
    "ModelSpec",
    "InferenceConfig",
    "FitResult",
    "fit_model",
    "fit_multiverse",
    "ModelComparison",
    "compare_models",
    "ModelChoices",
    "build_model_grid",
    "FilterConfig",
    "FilterResult",
    "filter_multiverse",
]
