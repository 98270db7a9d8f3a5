"""ModelComparison: predictive criteria of many candidate models side by side.

This module defines:

- ``ModelComparison`` — a dataclass that stores, per criterion and model, the
  pointwise elpd contributions (per observation or per group), effective
  number of parameters and Pareto k diagnostics, next to the MCMC
  diagnostics of each fit, and ranks models by any stored criterion.
- ``evaluate_criterion()`` — computes one criterion for one fitted model.
- ``compare_models()`` — factory that evaluates the requested criteria for a
  list of ``FitResult`` objects and returns a ``ModelComparison``.

Design decisions
----------------
- Pointwise contributions are kept rather than totals: standard errors of
  elpd differences need them, and criteria computed later (for example
  exact LOGO on a filtered subset) can be added with
  :meth:`ModelComparison.add_criterion`.
- Criteria that need refits (``exact_logo``, ``bridge_logo``) or
  optimizations per group (``laplace_logo``) are available through
  :func:`evaluate_criterion` but are not computed by default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..data_loader import GroupedData
from ..mcmc.results import FitResult
from ..models.config import Criterion, InferenceConfig, ModelSpec
from ..models.integrated import (
    marginal_group_log_likelihood,
    marginal_obs_log_likelihood,
)
from ..utils import progress_bar
from ._bridge import bridge_logo
from ._exact import exact_logo
from ._laplace import laplace_logo
from ._psis_loo import compute_psis_logo, compute_psis_loo, psis_loo_summary


# ---------------------------------------------------------------------------
# Results class
# ---------------------------------------------------------------------------


@dataclass
class ModelComparison:
    """Predictive criteria and diagnostics for K candidate models.

    Parameters
    ----------
    model_names : list of str
        Unique names of the K models.
    results : dict
        Criterion name -> list of K result dicts. Each dict holds at least
        ``elpd_i`` (pointwise contributions); PSIS criteria also hold
        ``k_hat``, ``k_threshold`` and ``n_bad``, and ``p_eff`` where the
        criterion defines it.
    n_divergences : np.ndarray, optional
        Divergent transitions of each model's fit.
    max_rhat : np.ndarray, optional
        Largest R-hat of each model's fit.
    specs : list of ModelSpec, optional
        Specifications of the models.

    Attributes
    ----------
    K : int
        Number of models.

    Examples
    --------
    >>> mc = compare_models(fits, data, criteria=("psis_loo", "psis_logo"))
    >>> mc.rank("psis_logo")
    >>> print(mc.summary("psis_loo"))
    """

    model_names: List[str]
    results: Dict[str, List[dict]] = field(default_factory=dict)
    n_divergences: Optional[np.ndarray] = None
    max_rhat: Optional[np.ndarray] = None
    specs: Optional[List[ModelSpec]] = None

    def __post_init__(self):
        self.model_names = list(self.model_names)
        if len(set(self.model_names)) != len(self.model_names):
            raise ValueError("Model names must be unique.")
        K = len(self.model_names)
        if self.n_divergences is None:
            self.n_divergences = np.zeros(K, dtype=int)
        if self.max_rhat is None:
            self.max_rhat = np.full(K, np.nan)
        self.n_divergences = np.asarray(self.n_divergences)
        self.max_rhat = np.asarray(self.max_rhat, dtype=np.float64)
        for name, entries in self.results.items():
            if len(entries) != K:
                raise ValueError(
                    f"Criterion '{name}' has {len(entries)} entries for "
                    f"{K} models."
                )

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def K(self) -> int:
        """Number of models."""
        return len(self.model_names)

    @property
    def criteria(self) -> List[str]:
        """Names of the criteria computed so far."""
        return list(self.results)

    # ------------------------------------------------------------------

    def add_criterion(
        self,
        name: Union[str, Criterion],
        pointwise: Sequence[Union[np.ndarray, dict]],
    ) -> "ModelComparison":
        """Store a criterion computed elsewhere.

        Parameters
        ----------
        name : str or Criterion
            Criterion name.
        pointwise : sequence
            One entry per model, in model order: either an array of pointwise
            elpd contributions or a result dict as returned by
            :func:`evaluate_criterion` (keys ``elpd_loo_i`` /
            ``elpd_logo_i`` etc. are recognized).

        Returns
        -------
        ModelComparison
            ``self``, for chaining.
        """
        name = _criterion_name(name)
        if len(pointwise) != self.K:
            raise ValueError(
                f"Expected {self.K} entries for '{name}', got {len(pointwise)}."
            )
        self.results[name] = [_normalize_entry(entry) for entry in pointwise]
        return self

    def _entries(self, criterion) -> List[dict]:
        name = _criterion_name(criterion)
        if name not in self.results:
            raise RuntimeError(
                f"Criterion '{name}' has not been computed. "
                f"Available: {self.criteria}."
            )
        return self.results[name]

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank(self, criterion: Union[str, Criterion] = "psis_loo") -> pd.DataFrame:
        """Rank models by predictive performance.

        Produces a table analogous to ``arviz.compare()``.

        Parameters
        ----------
        criterion : str or Criterion, default='psis_loo'
            Stored criterion to rank by.

        Returns
        -------
        pd.DataFrame
            Rows are models, sorted by elpd descending (best first).
            Columns:

            ``model``
                Model name.
            ``elpd``, ``se``
                Total elpd and its standard error.
            ``p_eff``
                Effective number of parameters (NaN where undefined).
            ``elpd_diff``
                Difference in elpd from the best model (0 for the best).
            ``se_diff``
                Standard error of the difference (pointwise CLT).
            ``z_score``
                ``elpd_diff / se_diff``.
            ``weight``
                Pseudo-BMA weight ``exp(elpd) / sum(exp(elpd))``.
            ``n_bad_k``, ``max_k``
                Pareto k diagnostics (PSIS criteria only; 0 and NaN
                otherwise).
            ``n_divergences``, ``max_rhat``
                MCMC diagnostics of the fit.

        Raises
        ------
        RuntimeError
            If the criterion has not been computed.
        """
        entries = self._entries(criterion)
        pointwise = [e["elpd_i"] for e in entries]
        n_units = {len(p) for p in pointwise}
        if len(n_units) != 1:
            raise ValueError(
                "Models have different numbers of pointwise contributions; "
                "they were not evaluated on the same data."
            )
        n = n_units.pop()

        elpd = np.array([float(np.sum(p)) for p in pointwise])
        se = np.array(
            [float(np.sqrt(n * np.var(p, ddof=1))) if n > 1 else 0.0
             for p in pointwise]
        )
        best_idx = int(np.argmax(elpd))
        elpd_diff = elpd - elpd[best_idx]

        se_diff = np.zeros(self.K)
        z_scores = np.zeros(self.K)
        for k in range(self.K):
            if k == best_idx:
                continue
            d_i = pointwise[k] - pointwise[best_idx]
            se_diff[k] = float(np.sqrt(np.sum((d_i - d_i.mean()) ** 2)))
            z_scores[k] = elpd_diff[k] / se_diff[k] if se_diff[k] > 0 else 0.0

        weights = np.exp(elpd - elpd.max())
        weights /= weights.sum()

        records = []
        for k, e in enumerate(entries):
            k_hat = e.get("k_hat")
            records.append(
                {
                    "model": self.model_names[k],
                    "elpd": float(elpd[k]),
                    "se": float(se[k]),
                    "p_eff": float(e.get("p_eff", np.nan)),
                    "elpd_diff": float(elpd_diff[k]),
                    "se_diff": float(se_diff[k]),
                    "z_score": float(z_scores[k]),
                    "weight": float(weights[k]),
                    "n_bad_k": int(e.get("n_bad", 0)),
                    "max_k": float(np.max(k_hat)) if k_hat is not None else np.nan,
                    "n_divergences": int(self.n_divergences[k]),
                    "max_rhat": float(self.max_rhat[k]),
                }
            )

        df = pd.DataFrame(records)
        return df.sort_values("elpd", ascending=False).reset_index(drop=True)

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def subset(self, models: Sequence[Union[int, str]]) -> "ModelComparison":
        """Comparison restricted to ``models`` (names or indices), in order."""
        idx = [_resolve_model_idx(m, self.model_names) for m in models]
        return ModelComparison(
            model_names=[self.model_names[i] for i in idx],
            results={
                name: [entries[i] for i in idx]
                for name, entries in self.results.items()
            },
            n_divergences=self.n_divergences[idx],
            max_rhat=self.max_rhat[idx],
            specs=[self.specs[i] for i in idx] if self.specs else None,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def diagnostics(
        self,
        criterion: Union[str, Criterion] = "psis_loo",
        model: Optional[Union[int, str]] = None,
    ) -> str:
        """Format Pareto k and MCMC diagnostics for one or all models."""
        entries = self._entries(criterion)
        if model is not None:
            indices = [_resolve_model_idx(model, self.model_names)]
        else:
            indices = list(range(self.K))

        parts = []
        for k in indices:
            parts.append(f"\n--- {self.model_names[k]} ---")
            parts.append(
                f"  divergences: {int(self.n_divergences[k])}, "
                f"max R-hat: {self.max_rhat[k]:.3f}"
            )
            raw = entries[k].get("raw")
            if raw is not None and "k_hat" in raw:
                parts.append(psis_loo_summary(raw))
        return "\n".join(parts)

    # ------------------------------------------------------------------
    # Summary / display
    # ------------------------------------------------------------------

    def summary(self, criterion: Union[str, Criterion] = "psis_loo") -> str:
        """Format a ranked comparison table as a string."""
        df = self.rank(criterion=criterion)
        name = _criterion_name(criterion)
        header = f"Model Comparison ({name.upper()})\n" + "=" * 60 + "\n"
        return header + df.to_string(index=False)

    def __repr__(self) -> str:
        return (
            f"ModelComparison(K={self.K}, criteria={self.criteria})"
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _criterion_name(criterion) -> str:
    return str(getattr(criterion, "value", criterion))


def _normalize_entry(entry) -> dict:
    """Bring an array or a criterion result dict into the stored layout."""
    if not isinstance(entry, dict):
        return {"elpd_i": np.asarray(entry, dtype=np.float64)}
    pointwise_keys = [
        k for k in entry if k.startswith("elpd_") and k.endswith("_i")
    ]
    if not pointwise_keys and "elpd_i" not in entry:
        raise ValueError(
            f"No pointwise elpd in result with keys {sorted(entry)}."
        )
    key = "elpd_i" if "elpd_i" in entry else pointwise_keys[0]
    out = {"elpd_i": np.asarray(entry[key], dtype=np.float64), "raw": entry}
    for p_key in ("p_eff", "p_loo", "p_logo"):
        if p_key in entry:
            out["p_eff"] = float(entry[p_key])
            break
    if "k_hat" in entry:
        out["k_hat"] = np.asarray(entry["k_hat"])
        out["k_threshold"] = float(entry["k_threshold"])
        out["n_bad"] = int(entry["n_bad"])
    return out


def _resolve_model_idx(model: Union[int, str], model_names: List[str]) -> int:
    """Resolve a model identifier to its index.

    Raises
    ------
    ValueError
        If the name is not found or the index is out of range.
    TypeError
        If ``model`` is neither an int nor a str.
    """
    if isinstance(model, (int, np.integer)):
        if model < 0 or model >= len(model_names):
            raise ValueError(
                f"Model index {model} out of range (K={len(model_names)})."
            )
        return int(model)
    if isinstance(model, str):
        if model not in model_names:
            raise ValueError(
                f"Model '{model}' not found. Available: {model_names}."
            )
        return model_names.index(model)
    raise TypeError(f"model must be int or str, got {type(model)}.")


def _as_logo(result: dict) -> dict:
    return {key.replace("loo", "logo"): value for key, value in result.items()}


# ---------------------------------------------------------------------------
# Criterion evaluation
# ---------------------------------------------------------------------------


def evaluate_criterion(
    criterion: Union[str, Criterion],
    fit: FitResult,
    data: GroupedData,
    config: Optional[InferenceConfig] = None,
    method: str = "ghq",
    n_nodes: int = 32,
    max_draws: Optional[int] = None,
    n_jobs: int = 1,
    cache_dir: Optional[str] = None,
) -> dict:
    """Compute one predictive criterion for one fitted model.

    Parameters
    ----------
    criterion : str or Criterion
        One of ``psis_loo``, ``psis_logo``, ``psis_loo_integrated``,
        ``psis_logo_integrated``, ``exact_logo``, ``bridge_logo``,
        ``laplace_logo``.
    fit : FitResult
        Fit of the model on ``data``.
    data : GroupedData
        The data the model was fitted on.
    config : InferenceConfig, optional
        Sampler settings for refits (``exact_logo``, ``bridge_logo``);
        defaults to the fit's own settings.
    method : {"ghq", "quad"}, default="ghq"
        Integration method of the integrated criteria and of exact LOGO.
    n_nodes : int, default=32
        Gauss-Hermite nodes.
    max_draws : int, optional
        Thin draws for the integrated criteria.
    n_jobs : int, default=1
        Worker processes (integration loop or refits).
    cache_dir : str, optional
        Directory of cached refits.

    Returns
    -------
    dict
        The criterion's result dict (``elpd_loo_i`` or ``elpd_logo_i`` and
        totals, plus diagnostics where defined).
    """
    try:
        criterion = Criterion(_criterion_name(criterion))
    except ValueError:
        raise ValueError(
            f"Unknown criterion '{criterion}'. "
            f"Available: {[c.value for c in Criterion]}."
        )
    config = config or fit.config
    spec = fit.spec

    if criterion == Criterion.PSIS_LOO:
        return compute_psis_loo(fit.log_lik)
    if criterion == Criterion.PSIS_LOGO:
        return compute_psis_logo(fit.log_lik, data.group_idx)
    if criterion == Criterion.PSIS_LOO_INTEGRATED:
        log_liks = marginal_obs_log_likelihood(
            fit.samples, data, spec, method=method, n_nodes=n_nodes,
            max_draws=max_draws, n_jobs=n_jobs,
        )
        return compute_psis_loo(log_liks)
    if criterion == Criterion.PSIS_LOGO_INTEGRATED:
        log_liks = marginal_group_log_likelihood(
            fit.samples, data, spec, method=method, n_nodes=n_nodes,
            max_draws=max_draws, n_jobs=n_jobs,
        )
        return _as_logo(compute_psis_loo(log_liks))
    if criterion == Criterion.EXACT_LOGO:
        return exact_logo(
            spec, data, config, n_jobs=n_jobs, method=method,
            cache_dir=cache_dir,
        )
    if criterion == Criterion.BRIDGE_LOGO:
        return bridge_logo(
            spec, data, config, n_jobs=n_jobs, full_fit=fit,
            cache_dir=cache_dir,
        )
    return laplace_logo(spec, data)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def compare_models(
    fits: Sequence[FitResult],
    data: GroupedData,
    criteria: Sequence[Union[str, Criterion]] = ("psis_loo", "psis_logo"),
    model_names: Optional[List[str]] = None,
    **kwargs,
) -> ModelComparison:
    """Evaluate predictive criteria for fitted models and collect them.

    Parameters
    ----------
    fits : sequence of FitResult
        Fitted candidate models, all on ``data``.
    data : GroupedData
        The data the models were fitted on.
    criteria : sequence, default=("psis_loo", "psis_logo")
        Criteria to compute.
    model_names : list of str, optional
        Names of the models; defaults to each specification's ``name``.
    **kwargs
        Passed to :func:`evaluate_criterion`.

    Returns
    -------
    ModelComparison
    """
    fits = list(fits)
    if not fits:
        raise ValueError("At least one fitted model is required.")
    if model_names is None:
        model_names = [fit.spec.name for fit in fits]
    if len(model_names) != len(fits):
        raise ValueError(
            f"Got {len(model_names)} names for {len(fits)} models."
        )

    comparison = ModelComparison(
        model_names=model_names,
        n_divergences=np.array([fit.n_divergences for fit in fits]),
        max_rhat=np.array([fit.max_rhat for fit in fits]),
        specs=[fit.spec for fit in fits],
    )

    criteria = [_criterion_name(c) for c in criteria]
    with progress_bar() as progress:
        task = progress.add_task(
            "Evaluating criteria", total=len(criteria) * len(fits)
        )
        for criterion in criteria:
            entries = []
            for fit in fits:
                entries.append(evaluate_criterion(criterion, fit, data, **kwargs))
                progress.advance(task)
            comparison.add_criterion(criterion, entries)
    return comparison
