"""
MCMC fitting of candidate models with NumPyro's NUTS sampler.

- ``MCMCInferenceEngine``: runs NUTS for one model on one data set.
- ``FitResult`` / ``fit_model``: numpy-only, picklable fit summaries.
- ``fit_multiverse``: parallel, cached fitting of many candidates.
"""

from .inference_engine import MCMCInferenceEngine
from .results import FitResult, fit_model
from .parallel import fit_cache_path, fit_multiverse

__all__ = [
    "MCMCInferenceEngine",
    "FitResult",
    "fit_model",
    "fit_cache_path",
    "fit_multiverse",
]
