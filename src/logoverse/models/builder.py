"""
NumPyro models for candidate model specifications.

All candidates share one generalized linear mixed model template:

    eta_i = b_Intercept + X_i b + sd_group z_group[g_i] + sd_obs z_obs[i]
    y_i   ~ family(eta_i, aux)

where the group and observation terms are present only when the
specification asks for them. Random effects use a non-centred
parameterization, which NUTS samples far more reliably for the small group
sizes typical of repeated-measurement studies.

The model function never registers deterministic sites, so
``MCMC.get_samples()`` returns exactly the latent sample sites; the
unconstrained log-density helpers in :mod:`logoverse.mc._density` rely on this.
"""

from typing import Callable, Dict, Optional

import jax.numpy as jnp
import numpy as np
import numpyro
import numpyro.distributions as dist

from ..data_loader import GroupedData
from .config import Family, ModelSpec, PriorType
from .design import build_design_matrix

# ------------------------------------------------------------------------------
# Observation distribution registry
# ------------------------------------------------------------------------------

# Keys: Family; values: callables (eta, aux) -> numpyro distribution
_FAMILY_REGISTRY: Dict[Family, Callable] = {}

# Auxiliary parameter of each family and its prior
_AUX_PARAMS = {
    Family.GAUSSIAN: ("sigma", lambda: dist.HalfNormal(2.5)),
    Family.POISSON: None,
    Family.NEGBINOMIAL: ("phi", lambda: dist.Gamma(2.0, 0.1)),
}


def register_family(family: Family):
    """Decorator registering the observation distribution of ``family``."""

    def decorator(fn):
        _FAMILY_REGISTRY[family] = fn
        return fn

    return decorator


@register_family(Family.GAUSSIAN)
def _gaussian(eta, aux):
    return dist.Normal(eta, aux["sigma"])


@register_family(Family.POISSON)
def _poisson(eta, aux):
    return dist.Poisson(jnp.exp(eta))


@register_family(Family.NEGBINOMIAL)
def _negbinomial(eta, aux):
    return dist.NegativeBinomial2(jnp.exp(eta), aux["phi"])


def observation_distribution(
    family: Family, eta, aux: Optional[Dict] = None
) -> dist.Distribution:
    """
    Distribution of the response given a linear predictor.

    Parameters
    ----------
    family : Family
        Likelihood family.
    eta : array-like
        Linear predictor (any shape).
    aux : dict, optional
        Auxiliary parameters (``sigma`` or ``phi``), broadcastable to ``eta``.

    Returns
    -------
    numpyro.distributions.Distribution
    """
    try:
        fn = _FAMILY_REGISTRY[Family(family)]
    except KeyError:
        raise ValueError(
            f"Unsupported family {family!r}. "
            f"Supported: {[f.value for f in _FAMILY_REGISTRY]}"
        )
    return fn(eta, aux or {})


def aux_param_name(family: Family) -> Optional[str]:
    """Name of the auxiliary parameter of ``family`` (``None`` if absent)."""
    entry = _AUX_PARAMS[Family(family)]
    return entry[0] if entry is not None else None


# ------------------------------------------------------------------------------
# Priors on the coefficients
# ------------------------------------------------------------------------------


def _sample_coefficients(prior: PriorType, p: int):
    """Sample the ``p`` regression coefficients under ``prior``."""
    if prior == PriorType.NORMAL:
        return numpyro.sample("b", dist.Normal(0.0, 1.0).expand([p]).to_event(1))
    if prior == PriorType.WIDE:
        return numpyro.sample(
            "b", dist.Normal(0.0, 10.0).expand([p]).to_event(1)
        )
    if prior == PriorType.STUDENT_T:
        return numpyro.sample(
            "b", dist.StudentT(3.0, 0.0, 2.5).expand([p]).to_event(1)
        )
    if prior == PriorType.HORSESHOE:
        tau = numpyro.sample("tau", dist.HalfCauchy(1.0))
        lam = numpyro.sample(
            "lambda", dist.HalfCauchy(1.0).expand([p]).to_event(1)
        )
        z_b = numpyro.sample(
            "z_b", dist.Normal(0.0, 1.0).expand([p]).to_event(1)
        )
        return tau * lam * z_b
    raise ValueError(f"Unsupported prior {prior!r}")


def coefficients(samples: Dict[str, np.ndarray], spec: ModelSpec) -> np.ndarray:
    """
    Regression coefficients of every draw, shape ``(S, p)`` with ``p`` the
    number of design-matrix columns (0 for intercept-only models).

    For the horseshoe prior the coefficients are not a sample site and are
    rebuilt from ``tau``, ``lambda`` and ``z_b``.
    """
    n_draws = np.asarray(samples["b_Intercept"]).shape[0]
    if spec.prior == PriorType.HORSESHOE and "z_b" in samples:
        return (
            np.asarray(samples["tau"])[:, None]
            * np.asarray(samples["lambda"])
            * np.asarray(samples["z_b"])
        )
    if "b" in samples:
        return np.asarray(samples["b"])
    return np.zeros((n_draws, 0))


# ------------------------------------------------------------------------------
# Model
# ------------------------------------------------------------------------------


def build_model(spec: ModelSpec) -> Callable:
    """
    Build the NumPyro model function of a candidate specification.

    Parameters
    ----------
    spec : ModelSpec
        Candidate model.

    Returns
    -------
    Callable
        ``model(X, group_idx, n_groups, y=None)``. When ``y`` is ``None`` the
        model samples responses from the prior predictive distribution.
    """
    family = Family(spec.family)
    prior = PriorType(spec.prior)
    aux_entry = _AUX_PARAMS[family]

    def model(X, group_idx, n_groups: int, y=None):
        n, p = X.shape

        b0 = numpyro.sample("b_Intercept", dist.StudentT(3.0, 0.0, 2.5))
        eta = b0 + jnp.zeros(n)

        if p > 0:
            b = _sample_coefficients(prior, p)
            eta = eta + X @ b

        if spec.group_effect:
            sd_group = numpyro.sample("sd_group", dist.HalfNormal(1.0))
            with numpyro.plate("groups", n_groups):
                z_group = numpyro.sample("z_group", dist.Normal(0.0, 1.0))
            eta = eta + sd_group * z_group[group_idx]

        if spec.obs_effect:
            sd_obs = numpyro.sample("sd_obs", dist.HalfNormal(1.0))
            with numpyro.plate("obs_effects", n):
                z_obs = numpyro.sample("z_obs", dist.Normal(0.0, 1.0))
            eta = eta + sd_obs * z_obs

        aux = {}
        if aux_entry is not None:
            name, make_prior = aux_entry
            aux[name] = numpyro.sample(name, make_prior())

        with numpyro.plate("obs", n):
            numpyro.sample(
                "y", observation_distribution(family, eta, aux), obs=y
            )

    return model


# ------------------------------------------------------------------------------


def model_args(data: GroupedData, spec: ModelSpec) -> Dict:
    """Keyword arguments of the model built for ``spec`` on ``data``."""
    X, _ = build_design_matrix(data.frame, spec)
    return {
        "X": jnp.asarray(X),
        "group_idx": jnp.asarray(data.group_idx),
        "n_groups": data.n_groups,
        "y": jnp.asarray(data.y),
    }


# ------------------------------------------------------------------------------
# Linear predictor of posterior draws
# ------------------------------------------------------------------------------


def linear_predictor(
    samples: Dict[str, np.ndarray],
    X: np.ndarray,
    group_idx: np.ndarray,
    spec: ModelSpec,
    include_group: bool = True,
    include_obs: bool = True,
) -> np.ndarray:
    """
    Linear predictor of every posterior draw, shape ``(S, n)``.

    Parameters
    ----------
    samples : dict
        Posterior draws (leading axis ``S``).
    X : np.ndarray, shape ``(n, p)``
        Design matrix.
    group_idx : np.ndarray, shape ``(n,)``
        Group codes of the rows.
    spec : ModelSpec
        Candidate model the draws belong to.
    include_group : bool, default=True
        Add the group intercepts of the draws.
    include_obs : bool, default=True
        Add the observation-level effects of the draws. Only valid when
        ``X`` has the rows the model was fitted on.

    Returns
    -------
    np.ndarray
    """
    eta = np.asarray(samples["b_Intercept"])[:, None] + np.zeros(X.shape[0])
    X = np.asarray(X)
    if X.shape[1] > 0:
        b = coefficients(samples, spec)
        if b.shape[1] != X.shape[1]:
            raise ValueError(
                f"Draws have {b.shape[1]} coefficients but X has "
                f"{X.shape[1]} columns."
            )
        eta = eta + b @ X.T

    if spec.group_effect and include_group:
        u = np.asarray(samples["sd_group"])[:, None] * np.asarray(
            samples["z_group"]
        )
        eta = eta + u[:, np.asarray(group_idx)]

    if spec.obs_effect and include_obs:
        z_obs = np.asarray(samples["z_obs"])
        if z_obs.shape[1] != X.shape[0]:
            raise ValueError(
                "Observation-level effects were drawn for "
                f"{z_obs.shape[1]} rows but X has {X.shape[0]}; "
                "integrate them out for new rows instead."
            )
        eta = eta + np.asarray(samples["sd_obs"])[:, None] * z_obs
    return eta


def aux_draws(samples: Dict[str, np.ndarray], spec: ModelSpec) -> Dict:
    """Auxiliary parameters of every draw as column vectors ``(S, 1)``."""
    name = aux_param_name(spec.family)
    if name is None:
        return {}
    return {name: np.asarray(samples[name])[:, None]}
