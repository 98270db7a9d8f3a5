"""
Results classes for logoverse MCMC inference.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd
from numpyro.diagnostics import summary as numpyro_summary
from numpyro.infer import MCMC

from ..data_loader import GroupedData
from ..models.config import InferenceConfig, ModelSpec
from ..models.log_likelihood import group_log_likelihood, pointwise_log_likelihood
from .inference_engine import MCMCInferenceEngine

# ------------------------------------------------------------------------------
# Parameter summary
# ------------------------------------------------------------------------------


def _summary_frame(grouped_samples: Dict[str, np.ndarray]) -> pd.DataFrame:
    """Per-parameter posterior summary (one row per scalar element)."""
    stats = numpyro_summary(grouped_samples, group_by_chain=True)
    rows = []
    for site, site_stats in stats.items():
        mean = np.atleast_1d(site_stats["mean"])
        n_elements = mean.size
        flat = {k: np.atleast_1d(v).ravel() for k, v in site_stats.items()}
        for j in range(n_elements):
            name = site if np.ndim(site_stats["mean"]) == 0 else f"{site}[{j}]"
            rows.append(
                {
                    "parameter": name,
                    "mean": flat["mean"][j],
                    "sd": flat["std"][j],
                    "q5": flat["5.0%"][j],
                    "q95": flat["95.0%"][j],
                    "n_eff": flat["n_eff"][j],
                    "r_hat": flat["r_hat"][j],
                }
            )
    return pd.DataFrame(rows)


# ------------------------------------------------------------------------------
# FitResult
# ------------------------------------------------------------------------------


@dataclass
class FitResult:
    """
    Posterior draws and diagnostics of one fitted candidate model.

    Everything is stored as numpy arrays and pandas objects so that results
    pickle cheaply and load without JAX devices.

    Parameters
    ----------
    spec : ModelSpec
        The fitted candidate.
    samples : dict
        Posterior draws with chains flattened into the leading axis ``S``.
    log_lik : np.ndarray, shape ``(S, n)``
        Conditional pointwise log-likelihood of every draw.
    n_divergences : int
        Divergent transitions after warmup, over all chains.
    max_rhat : float
        Largest split R-hat over all scalar parameters.
    min_ess : float
        Smallest effective sample size over all scalar parameters.
    param_summary : pd.DataFrame
        Per-parameter mean, sd, 5% and 95% quantiles, ``n_eff`` and ``r_hat``.
    config : InferenceConfig
        Sampler settings used.
    """

    spec: ModelSpec
    samples: Dict[str, np.ndarray]
    log_lik: np.ndarray
    n_divergences: int
    max_rhat: float
    min_ess: float
    param_summary: pd.DataFrame = field(repr=False)
    config: InferenceConfig = field(default_factory=InferenceConfig)

    # --------------------------------------------------------------------------

    @classmethod
    def from_mcmc(
        cls,
        mcmc: MCMC,
        spec: ModelSpec,
        data: GroupedData,
        config: InferenceConfig,
    ) -> "FitResult":
        """Collect draws, log-likelihood and diagnostics from a finished run."""
        grouped = {
            k: np.asarray(v)
            for k, v in mcmc.get_samples(group_by_chain=True).items()
        }
        samples = {
            k: v.reshape((-1,) + v.shape[2:]) for k, v in grouped.items()
        }
        param_summary = _summary_frame(grouped)
        diverging = mcmc.get_extra_fields().get("diverging")
        n_divergences = int(np.sum(diverging)) if diverging is not None else 0

        return cls(
            spec=spec,
            samples=samples,
            log_lik=pointwise_log_likelihood(samples, data, spec),
            n_divergences=n_divergences,
            max_rhat=float(np.nanmax(param_summary["r_hat"])),
            min_ess=float(np.nanmin(param_summary["n_eff"])),
            param_summary=param_summary,
            config=config,
        )

    # --------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def n_samples(self) -> int:
        """Number of posterior draws (all chains)."""
        return self.log_lik.shape[0]

    def group_log_lik(self, data: GroupedData) -> np.ndarray:
        """Group log-likelihood ``(S, G)`` over the groups observed in ``data``."""
        return group_log_likelihood(self.log_lik, data.group_idx)

    def summary(self) -> pd.DataFrame:
        """Per-parameter posterior summary table."""
        return self.param_summary.copy()

    def posterior_medians(self) -> Dict[str, np.ndarray]:
        """Posterior median of every sample site (constrained space)."""
        return {k: np.median(v, axis=0) for k, v in self.samples.items()}

    def diagnostics_ok(
        self, max_rhat: float = 1.01, max_divergences: int = 0
    ) -> bool:
        """Whether the fit passes the R-hat and divergence checks."""
        return (
            self.n_divergences <= max_divergences
            and self.max_rhat <= max_rhat
        )

    def __repr__(self) -> str:
        return (
            f"FitResult('{self.name}', n_samples={self.n_samples}, "
            f"n_divergences={self.n_divergences}, "
            f"max_rhat={self.max_rhat:.3f})"
        )


# ------------------------------------------------------------------------------


def fit_model(
    spec: ModelSpec,
    data: GroupedData,
    config: Optional[InferenceConfig] = None,
    init_values: Optional[Dict[str, np.ndarray]] = None,
) -> FitResult:
    """
    Fit one candidate model with NUTS.

    Parameters
    ----------
    spec : ModelSpec
        Candidate model.
    data : GroupedData
        Data to condition on.
    config : InferenceConfig, optional
        Sampler settings.
    init_values : dict, optional
        Constrained-space initial values of (some) sample sites.

    Returns
    -------
    FitResult
    """
    config = config or InferenceConfig()
    mcmc = MCMCInferenceEngine.run_inference(
        spec, data, config, init_values=init_values
    )
    return FitResult.from_mcmc(mcmc, spec, data, config)
