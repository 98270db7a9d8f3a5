"""Unconstrained log joint density of a candidate model.

Marginal-likelihood estimators (bridge sampling, Laplace) work on a flat
vector of unconstrained parameters. NumPyro provides the potential energy
(negative log joint density including the log-Jacobians of the
constraining transforms) as a function of a dictionary of unconstrained
sites; this module flattens it with ``jax.flatten_util.ravel_pytree``.
"""

from dataclasses import dataclass
from typing import Callable, Dict

import jax
import jax.numpy as jnp
import numpy as np
from jax import random
from jax.flatten_util import ravel_pytree
from numpyro.infer.initialization import init_to_median
from numpyro.infer.util import initialize_model, unconstrain_fn

from ..data_loader import GroupedData
from ..models.builder import build_model, model_args
from ..models.config import ModelSpec


@dataclass
class LogDensity:
    """Flattened unconstrained log density of one model on one data set.

    Attributes
    ----------
    fn : callable
        ``fn(x) -> float``, log joint density at a flat vector ``x`` of
        length ``dim``. JAX-traceable.
    batched : callable
        ``batched(X) -> (N,)`` for a matrix of vectors, jitted.
    unravel : callable
        Maps a flat vector back to the dictionary of unconstrained sites.
    dim : int
        Number of unconstrained parameters.
    init : np.ndarray
        A valid initial point (prior median, unconstrained).
    postprocess : callable
        Maps a dictionary of unconstrained sites to constrained values.
    """

    fn: Callable
    batched: Callable
    unravel: Callable
    dim: int
    init: np.ndarray
    postprocess: Callable


def unconstrained_log_density(
    spec: ModelSpec, data: GroupedData, seed: int = 0
) -> LogDensity:
    """Build the flat unconstrained log joint density of ``spec`` on ``data``.

    Parameters
    ----------
    spec : ModelSpec
        Candidate model.
    data : GroupedData
        Data to condition on.
    seed : int, default=0
        Seed used by NumPyro to trace the model.

    Returns
    -------
    LogDensity
    """
    model = build_model(spec)
    kwargs = model_args(data, spec)
    param_info, potential_fn, postprocess_fn, _ = initialize_model(
        random.PRNGKey(seed),
        model,
        model_kwargs=kwargs,
        init_strategy=init_to_median,
        dynamic_args=False,
    )
    flat_init, unravel = ravel_pytree(param_info.z)

    def log_density(x):
        return -potential_fn(unravel(x))

    return LogDensity(
        fn=log_density,
        batched=jax.jit(jax.vmap(log_density)),
        unravel=unravel,
        dim=int(flat_init.shape[0]),
        init=np.asarray(flat_init),
        postprocess=postprocess_fn,
    )


def unconstrained_draws(
    spec: ModelSpec,
    data: GroupedData,
    samples: Dict[str, np.ndarray],
) -> np.ndarray:
    """Map constrained posterior draws to flat unconstrained vectors.

    Parameters
    ----------
    spec : ModelSpec
        Candidate model the draws belong to.
    data : GroupedData
        Data the model was fitted on (fixes the site shapes).
    samples : dict
        Posterior draws, chains flattened into the leading axis.

    Returns
    -------
    np.ndarray, shape ``(S, d)``
        Ordered like :attr:`LogDensity.unravel` of the same model and data.
    """
    model = build_model(spec)
    kwargs = model_args(data, spec)

    def _flatten(params):
        z = unconstrain_fn(model, (), kwargs, params)
        return ravel_pytree(z)[0]

    draws = {k: jnp.asarray(v) for k, v in samples.items()}
    return np.asarray(jax.jit(jax.vmap(_flatten))(draws))
