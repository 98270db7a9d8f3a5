"""
Conditional log-likelihood of posterior draws.

These are the matrices that importance-sampling cross-validation works on:
rows are posterior draws and columns are the units being left out, either
single observations (LOO) or whole groups (LOGO).
"""

from typing import Dict, Optional, Sequence

import jax.numpy as jnp
import numpy as np

from ..data_loader import GroupedData
from .builder import aux_draws, linear_predictor, observation_distribution
from .config import ModelSpec
from .design import build_design_matrix

# ==============================================================================
# Pointwise log-likelihood
# ==============================================================================


def pointwise_log_likelihood(
    samples: Dict[str, np.ndarray],
    data: GroupedData,
    spec: ModelSpec,
) -> np.ndarray:
    """
    Pointwise log-likelihood with all random effects at their drawn values.

    Parameters
    ----------
    samples : dict
        Posterior draws, chains flattened into the leading axis ``S``.
    data : GroupedData
        The data the model was fitted on.
    spec : ModelSpec
        Candidate model.

    Returns
    -------
    np.ndarray, shape ``(S, n)``
        ``log p(y_i | theta^s)`` for every draw ``s`` and observation ``i``.
    """
    X, _ = build_design_matrix(data.frame, spec)
    eta = linear_predictor(samples, X, data.group_idx, spec)
    aux = {k: jnp.asarray(v) for k, v in aux_draws(samples, spec).items()}
    d = observation_distribution(spec.family, jnp.asarray(eta), aux)
    return np.asarray(d.log_prob(jnp.asarray(data.y)), dtype=np.float64)


# ------------------------------------------------------------------------------


def group_log_likelihood(
    log_liks: np.ndarray,
    group_idx: np.ndarray,
    groups: Optional[Sequence[int]] = None,
) -> np.ndarray:
    """
    Sum pointwise log-likelihood within groups.

    Parameters
    ----------
    log_liks : np.ndarray, shape ``(S, n)``
        Pointwise log-likelihood.
    group_idx : np.ndarray, shape ``(n,)``
        Group code of each column.
    groups : sequence of int, optional
        Group codes to return, in order. Defaults to the sorted codes that
        occur in ``group_idx``, so groups without rows are skipped.

    Returns
    -------
    np.ndarray, shape ``(S, G)``
        ``log p(y_g | theta^s)`` for each requested group ``g``.
    """
    log_liks = np.asarray(log_liks, dtype=np.float64)
    group_idx = np.asarray(group_idx)
    if log_liks.ndim != 2 or log_liks.shape[1] != group_idx.shape[0]:
        raise ValueError(
            f"log_liks has shape {log_liks.shape} but group_idx has "
            f"{group_idx.shape[0]} entries."
        )
    if groups is None:
        groups = np.unique(group_idx)
    out = np.empty((log_liks.shape[0], len(groups)))
    for j, g in enumerate(groups):
        mask = group_idx == g
        if not np.any(mask):
            raise ValueError(f"Group code {g} has no observations.")
        out[:, j] = log_liks[:, mask].sum(axis=1)
    return out
