"""
Iterative filtering of a multiverse of candidate models.

Each round applies two steps to the models still retained:

1.  **Computational**: drop models whose fit cannot be trusted (divergent
    transitions, R-hat above threshold and, optionally, too many Pareto k
    values above the threshold of the ranking criterion).
2.  **Predictive**: rank the remaining models by the criterion and keep
    those whose elpd is close to the best model's, either in absolute terms
    (``|elpd_diff| <= min_elpd_diff``) or relative to the uncertainty of the
    difference (``|elpd_diff| <= se_multiplier * se_diff``).

Rounds repeat until the retained set no longer changes.
"""

import warnings
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from ..mc.results import ModelComparison
from ..models.config import Criterion

# ==============================================================================
# Configuration
# ==============================================================================


class FilterConfig(BaseModel):
    """
    Thresholds of the multiverse filter.

    Parameters
    ----------
    criterion : Criterion
        Stored criterion used for ranking.
    min_elpd_diff : float
        Models within this elpd of the best are always kept.
    se_multiplier : float
        Models within this many standard errors of the difference are kept.
    max_divergences : int, optional
        Maximum tolerated divergent transitions (``None`` disables).
    max_rhat : float, optional
        Maximum tolerated R-hat (``None`` disables).
    max_bad_k : int, optional
        Maximum tolerated Pareto k values above the threshold (``None``
        disables; only PSIS criteria carry k values).
    max_rounds : int
        Upper bound on filtering rounds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    criterion: Criterion = Field(Criterion.PSIS_LOO)
    min_elpd_diff: float = Field(4.0, ge=0.0)
    se_multiplier: float = Field(2.0, ge=0.0)
    max_divergences: Optional[int] = Field(0, ge=0)
    max_rhat: Optional[float] = Field(1.01, gt=1.0)
    max_bad_k: Optional[int] = Field(None, ge=0)
    max_rounds: int = Field(20, gt=0)


# ==============================================================================
# Result
# ==============================================================================


@dataclass
class FilterResult:
    """
    Outcome of :func:`filter_multiverse`.

    Attributes
    ----------
    retained : list of str
        Names of the retained models, best first.
    ranking : pd.DataFrame
        Final ranking of the retained models.
    history : pd.DataFrame
        One row per dropped model: ``round``, ``step`` (``computational`` or
        ``predictive``), ``model`` and ``reason``.
    n_rounds : int
        Rounds run.
    converged : bool
        Whether the retained set became stable within ``max_rounds``.
    config : FilterConfig
        Thresholds used.
    """

    retained: List[str]
    ranking: pd.DataFrame
    history: pd.DataFrame
    n_rounds: int
    converged: bool
    config: FilterConfig

    @property
    def dropped(self) -> List[str]:
        return list(self.history["model"])

    def summary(self) -> str:
        """Human-readable report of the filtering."""
        lines = [
            f"Multiverse filtering ({self.config.criterion.value})",
            "=" * 60,
            f"  rounds   : {self.n_rounds}"
            + ("" if self.converged else " (not converged)"),
            f"  dropped  : {len(self.history)}",
            f"  retained : {len(self.retained)}",
        ]
        if len(self.history):
            counts = self.history.groupby("step").size()
            for step, count in counts.items():
                lines.append(f"    {step:<14}: {count} dropped")
        lines.append("")
        lines.append(self.ranking.to_string(index=False))
        return "\n".join(lines)


# ==============================================================================
# Filtering
# ==============================================================================


def _computational_reasons(row, config: FilterConfig) -> List[str]:
    reasons = []
    if (
        config.max_divergences is not None
        and row["n_divergences"] > config.max_divergences
    ):
        reasons.append(f"{int(row['n_divergences'])} divergences")
    if config.max_rhat is not None and row["max_rhat"] > config.max_rhat:
        reasons.append(f"R-hat {row['max_rhat']:.3f}")
    if config.max_bad_k is not None and row["n_bad_k"] > config.max_bad_k:
        reasons.append(f"{int(row['n_bad_k'])} bad Pareto k")
    return reasons


def filter_multiverse(
    comparison: ModelComparison,
    criterion: Optional[Union[str, Criterion]] = None,
    config: Optional[FilterConfig] = None,
) -> FilterResult:
    """
    Iteratively filter candidate models by computational soundness and
    predictive performance.

    Parameters
    ----------
    comparison : ModelComparison
        Criteria and diagnostics of all candidates; must hold the ranking
        criterion.
    criterion : str or Criterion, optional
        Ranking criterion; overrides ``config.criterion`` when given.
    config : FilterConfig, optional
        Thresholds; defaults to ``FilterConfig()``.

    Returns
    -------
    FilterResult

    Raises
    ------
    RuntimeError
        If the criterion was not computed or every model fails the
        computational checks.
    """
    config = config or FilterConfig()
    if criterion is not None:
        config = config.model_copy(update={"criterion": Criterion(criterion)})
    criterion = config.criterion
    retained = list(comparison.model_names)
    history = []
    converged = False
    n_rounds = 0

    for n_rounds in range(1, config.max_rounds + 1):
        before = set(retained)

        # Step 1: computational checks
        table = comparison.subset(retained).rank(criterion)
        failed = {}
        for _, row in table.iterrows():
            reasons = _computational_reasons(row, config)
            if reasons:
                failed[row["model"]] = "; ".join(reasons)
        for model, reason in failed.items():
            history.append(
                {"round": n_rounds, "step": "computational", "model": model,
                 "reason": reason}
            )
        retained = [m for m in retained if m not in failed]
        if not retained:
            raise RuntimeError(
                "Every model failed the computational checks; relax the "
                "thresholds or refit with different sampler settings."
            )

        # Step 2: predictive performance relative to the best model
        ranking = comparison.subset(retained).rank(criterion)
        abs_diff = np.abs(ranking["elpd_diff"].to_numpy())
        keep = (abs_diff <= config.min_elpd_diff) | (
            abs_diff <= config.se_multiplier * ranking["se_diff"].to_numpy()
        )
        for (_, row), kept in zip(ranking.iterrows(), keep):
            if not kept:
                history.append(
                    {
                        "round": n_rounds,
                        "step": "predictive",
                        "model": row["model"],
                        "reason": (
                            f"elpd_diff {row['elpd_diff']:.2f} "
                            f"(se {row['se_diff']:.2f})"
                        ),
                    }
                )
        retained = list(ranking["model"][keep])

        if set(retained) == before:
            converged = True
            break

    if not converged:
        warnings.warn(
            f"Multiverse filtering did not stabilize in {config.max_rounds} "
            "rounds.",
            RuntimeWarning,
            stacklevel=2,
        )

    return FilterResult(
        retained=retained,
        ranking=comparison.subset(retained).rank(criterion),
        history=pd.DataFrame(
            history, columns=["round", "step", "model", "reason"]
        ),
        n_rounds=n_rounds,
        converged=converged,
        config=config,
    )
