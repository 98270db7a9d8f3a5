"""Bayesian model comparison for logoverse.

This module estimates out-of-sample predictive performance of fitted
candidate models when whole groups (subjects) are left out, and compares the
candidates on it. Criteria:

- **PSIS-LOO / PSIS-LOGO**: Pareto-smoothed importance sampling
  approximations of leave-one-observation-out and leave-one-group-out
  cross-validation, from a single fit, with per-unit diagnostic k_hat.
- **Integrated PSIS**: the same on likelihoods with the observation-level
  effect (LOO) or the group intercept (LOGO) integrated out numerically,
  which tames the importance ratios of models with unit-level latents.
- **Exact LOGO**: refit once per group (the reference).
- **Bridge / Laplace LOGO**: ``log p(y_g | y_{-g})`` as the difference of
  two log marginal likelihoods, estimated by bridge sampling (needs refits)
  or by the Laplace approximation (needs one optimization per group).

Quick start
-----------

>>> from logoverse.mc import compare_models
>>> mc = compare_models(fits, data, criteria=("psis_loo", "psis_logo"))
>>> print(mc.summary("psis_logo"))    # ranked comparison table
>>> print(mc.diagnostics("psis_logo"))  # Pareto k and MCMC diagnostics
>>> mc.rank("psis_loo")               # pandas DataFrame

Class hierarchy
---------------
- ``ModelComparison`` — pointwise criteria and diagnostics of K models;
  ranking, subsetting and summaries.

Factory
-------
- ``compare_models()`` — evaluates criteria for a list of ``FitResult``.

Low-level functions
-------------------
- ``psis_smooth()`` / ``compute_psis_loo()`` / ``compute_psis_logo()``.
- ``exact_logo()`` / ``refit_without_groups()``.
- ``bridge_sampling()`` / ``bridge_log_marginal()`` / ``bridge_logo()``.
- ``laplace_approximation()`` / ``laplace_log_marginal()`` /
  ``laplace_logo()``.
"""

from .results import ModelComparison, compare_models, evaluate_criterion

from ._psis_loo import (
    compute_psis_logo,
    compute_psis_loo,
    pareto_k_threshold,
    psis_loo_summary,
    psis_smooth,
)
from ._exact import exact_logo, refit_without_groups
from ._density import LogDensity, unconstrained_draws, unconstrained_log_density
from ._bridge import bridge_log_marginal, bridge_logo, bridge_sampling
from ._laplace import (
    LaplaceApproximationError,
    laplace_approximation,
    laplace_log_marginal,
    laplace_logo,
)

__all__ = [
    "ModelComparison",
    "compare_models",
    "evaluate_criterion",
    "psis_smooth",
    "compute_psis_loo",
    "compute_psis_logo",
    "pareto_k_threshold",
    "psis_loo_summary",
    "exact_logo",
    "refit_without_groups",
    "LogDensity",
    "unconstrained_log_density",
    "unconstrained_draws",
    "bridge_sampling",
    "bridge_log_marginal",
    "bridge_logo",
    "LaplaceApproximationError",
    "laplace_approximation",
    "laplace_log_marginal",
    "laplace_logo",
]
