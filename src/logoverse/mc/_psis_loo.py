"""Pareto-smoothed importance sampling cross-validation (PSIS-LOO / PSIS-LOGO).

This module implements PSIS-LOO @vehtari2017 and its leave-one-group-out
variant. Both approximate exact cross-validation from a single posterior fit
by re-weighting the posterior draws with importance ratios and stabilizing
their heavy right tail with a fitted generalized Pareto distribution (GPD).
The only difference between the two is the unit left out: a column of the
pointwise log-likelihood matrix (LOO) or the sum of the columns of one group
(LOGO).

Algorithm outline (per left-out unit i)
---------------------------------------
1.  Raw log IS weights: log w_s = -log p(y_i | theta^s), shifted so the
    largest is 0.
2.  Identify M = min(S//5, ceil(3*sqrt(S/r_eff))) tail samples (at least 5).
3.  Fit a GPD to the exceedances of the M largest weights over the cutoff
    with the Zhang-Stephens empirical Bayes estimator.
4.  Replace the tail weights with GPD quantiles at (j - 0.5)/M.
5.  Truncate smoothed weights at the largest raw weight and normalize.
6.  Compute the LOO contribution as the importance-weighted average.
7.  Record k_hat (Pareto shape) as the reliability diagnostic of unit i.

Diagnostic thresholds for k_hat
-------------------------------
- k <= min(1 - 1/log10(S), 0.7) : the estimate is reliable.
- larger k : the importance ratios have too heavy a tail; the PSIS estimate
  of unit i is unreliable. For LOGO this is common because removing a whole
  group moves the posterior much more than removing one observation.

References
----------
Vehtari, Gelman, Gabry (2017), "Practical Bayesian model evaluation using
    leave-one-out cross-validation and WAIC." Statistics and Computing.
Vehtari, Simpson, Gelman, Yao, Gabry (2024), "Pareto smoothed importance
    sampling." JMLR.
Zhang, Stephens (2009), "A new and efficient estimation method for the
    generalized Pareto distribution." Technometrics.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import stats
from scipy.special import logsumexp

from ..models.log_likelihood import group_log_likelihood

# Weakly informative prior on k: n_prior pseudo-observations at 0.5
_PRIOR_K_STRENGTH = 10.0
_PRIOR_K_VALUE = 0.5

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _n_tail(n_samples: int, r_eff: float = 1.0) -> int:
    """Number of tail samples M used for Pareto smoothing.

    M = min(floor(S/5), ceil(3*sqrt(S/r_eff))), clamped to at least 5.
    """
    return max(
        5,
        min(n_samples // 5, int(np.ceil(3.0 * np.sqrt(n_samples / r_eff)))),
    )


def pareto_k_threshold(n_samples: int) -> float:
    """Sample-size dependent k_hat threshold, ``min(1 - 1/log10(S), 0.7)``."""
    if n_samples <= 10:
        return 0.0
    return float(min(1.0 - 1.0 / np.log10(n_samples), 0.7))


def _fit_gpd_zhang_stephens(tail: np.ndarray) -> Tuple[float, float]:
    """Empirical Bayes GPD fit of Zhang & Stephens (2009).

    Parameters
    ----------
    tail : np.ndarray, shape ``(M,)``
        Positive exceedances, sorted ascending.

    Returns
    -------
    k_hat, sigma_hat : float
        Shape (before the prior adjustment) and scale.
    """
    n = len(tail)
    m_est = 30 + int(np.sqrt(n))
    b = 1.0 - np.sqrt(m_est / (np.arange(1, m_est + 1) - 0.5))
    b /= 3.0 * tail[int(n / 4 + 0.5) - 1]
    b += 1.0 / tail[-1]

    k = np.log1p(-b[:, None] * tail).mean(axis=1)
    profile = n * (np.log(-(b / k)) - k - 1.0)
    weights = 1.0 / np.exp(profile - profile[:, None]).sum(axis=1)

    # Drop candidates with negligible posterior weight
    keep = weights >= 10 * np.finfo(float).eps
    weights = weights[keep] / weights[keep].sum()
    b_post = float(np.sum(b[keep] * weights))

    k_hat = float(np.log1p(-b_post * tail).mean())
    sigma_hat = -k_hat / b_post
    return k_hat, sigma_hat


def _fit_gpd(tail_values: np.ndarray) -> Tuple[float, float]:
    """Fit a generalized Pareto distribution to tail exceedances.

    Uses the Zhang-Stephens estimator with the weakly informative prior
    pulling k toward 0.5. Falls back to a moment-matching estimator if the
    estimator produces non-finite values.

    Parameters
    ----------
    tail_values : np.ndarray, shape ``(M,)``
        Exceedances of the tail weights over the cutoff, sorted ascending.

    Returns
    -------
    k_hat : float
        Pareto shape parameter (diagnostic k_hat).
    sigma_hat : float
        Pareto scale parameter.
    """
    n = len(tail_values)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        k_hat, sigma_hat = _fit_gpd_zhang_stephens(tail_values)

    if not (np.isfinite(k_hat) and np.isfinite(sigma_hat) and sigma_hat > 0):
        # Method-of-moments for GPD with loc=0:
        # mean = sigma/(1-k), var = sigma^2/((1-k)^2*(1-2k))
        mu = float(np.mean(tail_values))
        s2 = float(np.var(tail_values, ddof=1))
        if s2 < 1e-10 or mu < 1e-10:
            return 0.0, mu + 1e-8
        k_hat = float(np.clip(0.5 * (1.0 - mu**2 / s2), -2.0, 0.49))
        sigma_hat = max(mu * (1.0 - k_hat), 1e-8)

    k_hat = (n * k_hat + _PRIOR_K_STRENGTH * _PRIOR_K_VALUE) / (
        n + _PRIOR_K_STRENGTH
    )
    return float(k_hat), float(sigma_hat)


def _gpd_quantiles(probs: np.ndarray, k: float, sigma: float) -> np.ndarray:
    """Quantiles of GPD(loc=0, scale=sigma, shape=k)."""
    if abs(k) < 1e-6:
        # Exponential limit
        return -sigma * np.log1p(-probs)
    return stats.genpareto.ppf(probs, k, loc=0.0, scale=sigma)


# ---------------------------------------------------------------------------
# Pareto smoothing
# ---------------------------------------------------------------------------


def psis_smooth(
    log_weights: np.ndarray, r_eff: float = 1.0
) -> Tuple[np.ndarray, float]:
    """Pareto-smooth one vector of log importance ratios.

    Parameters
    ----------
    log_weights : np.ndarray, shape ``(S,)``
        Raw log importance ratios, for LOO ``-log p(y_i | theta^s)``.
    r_eff : float, default=1.0
        Relative MCMC efficiency of the ratios; lengthens the tail when
        below one.

    Returns
    -------
    smoothed_log_weights : np.ndarray, shape ``(S,)``
        Pareto-smoothed and normalized log weights (``logsumexp == 0``),
        same index order as the input.
    k_hat : float
        Estimated Pareto shape. ``0`` for constant input and ``inf`` when the
        tail has fewer than five distinct values.
    """
    lw = np.array(log_weights, dtype=np.float64)
    S = lw.shape[0]

    # Early exit: all weights equal, nothing to smooth
    if np.ptp(lw) < 1e-10:
        return np.full(S, -np.log(S)), 0.0

    lw -= lw.max()
    M = min(_n_tail(S, r_eff), S - 1)

    sort_idx = np.argsort(lw)
    cutoff = max(lw[sort_idx[-M - 1]], np.log(np.finfo(float).tiny))
    exp_cutoff = np.exp(cutoff)

    tail_idx = np.flatnonzero(lw > cutoff)
    k_hat = np.inf
    if len(tail_idx) > 4:
        tail_order = tail_idx[np.argsort(lw[tail_idx])]
        tail_excess = np.exp(lw[tail_order]) - exp_cutoff
        k_hat, sigma_hat = _fit_gpd(tail_excess)
        if np.isfinite(k_hat):
            n_t = len(tail_order)
            probs = (np.arange(1, n_t + 1) - 0.5) / n_t
            smoothed = _gpd_quantiles(probs, k_hat, sigma_hat)
            lw[tail_order] = np.log(smoothed + exp_cutoff)
            # Truncate at the largest raw weight (0 after the shift)
            lw[lw > 0] = 0.0

    lw -= logsumexp(lw)
    return lw, float(k_hat)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compute_psis_loo(
    log_liks: np.ndarray,
    r_eff: Union[float, np.ndarray] = 1.0,
    dtype: type = np.float64,
) -> Dict[str, np.ndarray]:
    """Compute PSIS-LOO statistics from a posterior log-likelihood matrix.

    Each column is one left-out unit: an observation for ordinary LOO, or a
    whole group when ``log_liks`` is a group log-likelihood matrix.

    Parameters
    ----------
    log_liks : array-like, shape ``(S, n)``
        Log-likelihood matrix: rows are posterior draws, columns are units.
    r_eff : float or array-like of shape ``(n,)``, default=1.0
        Relative efficiency of each unit's importance ratios.
    dtype : numpy dtype, default=np.float64
        Numerical precision. Double precision is recommended because the
        Pareto fit is sensitive to precision.

    Returns
    -------
    dict
        Keys:

        ``elpd_loo`` : float
            Total estimated expected log predictive density.
        ``se_elpd_loo`` : float
            Standard error ``sqrt(n * var(elpd_loo_i))``.
        ``p_loo`` : float
            Effective number of parameters: ``lppd - elpd_loo``.
        ``looic`` : float
            LOO information criterion on deviance scale:
            ``looic = -2 * elpd_loo``.
        ``elpd_loo_i`` : np.ndarray, shape ``(n,)``
            Per-unit LOO log predictive density.
        ``k_hat`` : np.ndarray, shape ``(n,)``
            Per-unit Pareto shape diagnostic.
        ``lppd`` : float
            In-sample log pointwise predictive density.
        ``n_bad`` : int
            Number of units with k_hat above ``k_threshold``.
        ``k_threshold`` : float
            ``min(1 - 1/log10(S), 0.7)``.

    Examples
    --------
    >>> import numpy as np
    >>> from logoverse.mc import compute_psis_loo
    >>> rng = np.random.default_rng(0)
    >>> log_liks = rng.normal(-3.0, 0.5, size=(1000, 50))
    >>> result = compute_psis_loo(log_liks)
    >>> print(result["k_hat"].max())
    """
    log_liks = np.asarray(log_liks, dtype=dtype)
    if log_liks.ndim != 2:
        raise ValueError(
            f"log_liks must be a (draws, units) matrix, got shape "
            f"{log_liks.shape}"
        )
    S, n = log_liks.shape
    r_eff = np.broadcast_to(np.asarray(r_eff, dtype=dtype), (n,))

    k_hat = np.zeros(n, dtype=dtype)
    elpd_loo_i = np.zeros(n, dtype=dtype)

    for i in range(n):
        smooth_lw, k_hat[i] = psis_smooth(-log_liks[:, i], r_eff=r_eff[i])
        # Weights are normalized, so this is the IS-weighted average
        elpd_loo_i[i] = logsumexp(smooth_lw + log_liks[:, i])

    lppd_i = logsumexp(log_liks, axis=0) - np.log(S)
    lppd = float(np.sum(lppd_i))

    elpd_loo = float(np.sum(elpd_loo_i))
    se_elpd_loo = (
        float(np.sqrt(n * np.var(elpd_loo_i, ddof=1))) if n > 1 else 0.0
    )
    k_threshold = pareto_k_threshold(S)

    return {
        "elpd_loo": elpd_loo,
        "se_elpd_loo": se_elpd_loo,
        "p_loo": lppd - elpd_loo,
        "looic": -2.0 * elpd_loo,
        "elpd_loo_i": elpd_loo_i,
        "k_hat": k_hat,
        "lppd": lppd,
        "n_bad": int(np.sum(k_hat > k_threshold)),
        "k_threshold": k_threshold,
    }


def compute_psis_logo(
    log_liks: np.ndarray,
    group_idx: np.ndarray,
    groups: Optional[Sequence[int]] = None,
    r_eff: Union[float, np.ndarray] = 1.0,
) -> Dict[str, np.ndarray]:
    """Compute PSIS leave-one-group-out statistics.

    Sums the pointwise log-likelihood within each group and runs PSIS on the
    resulting ``(S, G)`` matrix.

    Parameters
    ----------
    log_liks : array-like, shape ``(S, n)``
        Pointwise log-likelihood.
    group_idx : array-like, shape ``(n,)``
        Group code of each observation.
    groups : sequence of int, optional
        Group codes to evaluate; defaults to all codes present.
    r_eff : float or array-like, default=1.0
        Relative efficiency per group.

    Returns
    -------
    dict
        The keys of :func:`compute_psis_loo` with ``logo`` in place of
        ``loo`` (``elpd_logo``, ``se_elpd_logo``, ``p_logo``, ``logoic``,
        ``elpd_logo_i``, ...), plus ``groups``.
    """
    if groups is None:
        groups = np.unique(np.asarray(group_idx))
    group_ll = group_log_likelihood(log_liks, group_idx, groups)
    result = compute_psis_loo(group_ll, r_eff=r_eff)
    out = {key.replace("loo", "logo"): value for key, value in result.items()}
    out["groups"] = np.asarray(groups)
    return out


def psis_loo_summary(result: dict) -> str:
    """Format a human-readable summary of PSIS diagnostics.

    Parameters
    ----------
    result : dict
        Output of :func:`compute_psis_loo` or :func:`compute_psis_logo`.

    Returns
    -------
    str
        A multi-line summary string.
    """
    unit = "logo" if "elpd_logo" in result else "loo"
    label = "groups" if unit == "logo" else "observations"
    k = result["k_hat"]
    n = len(k)
    threshold = result["k_threshold"]
    n_good = int(np.sum(k <= 0.5))
    n_ok = int(np.sum((k > 0.5) & (k <= threshold)))
    n_bad = int(np.sum(k > threshold))

    lines = [
        f"PSIS-{unit.upper()} Summary",
        "=" * 40,
        f"  elpd_{unit} : {result[f'elpd_{unit}']:.2f} "
        f"(se {result[f'se_elpd_{unit}']:.2f})",
        f"  p_{unit}    : {result[f'p_{unit}']:.2f}",
        f"  {unit.upper()}-IC   : {result[f'{unit}ic']:.2f}",
        "",
        f"  Pareto k diagnostics (n={n} {label}, threshold "
        f"{threshold:.2f}):",
        f"    k <= 0.5          (good) : {n_good:5d}  ({100*n_good/n:5.1f}%)",
        f"    0.5 < k <= {threshold:.2f}  (ok) : {n_ok:5d}  "
        f"({100*n_ok/n:5.1f}%)",
        f"    k > {threshold:.2f}        (bad) : {n_bad:5d}  "
        f"({100*n_bad/n:5.1f}%)",
    ]
    if n_bad > 0:
        lines.append(
            f"\n  WARNING: {n_bad} {label} have k > {threshold:.2f}."
            f" PSIS estimates may be unreliable for these {label}."
        )
    return "\n".join(lines)
