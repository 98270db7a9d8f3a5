"""
Fit many candidate models across processor cores.

Candidate fits are independent, so they are mapped over a ``joblib`` worker
pool with no shared state. Each worker checks the cache first; results come
back in the order of the input specifications.
"""

from typing import List, Optional, Sequence

from joblib import Parallel, delayed

from ..cache import cache_path, fingerprint, load_or_compute
from ..data_loader import GroupedData
from ..models.config import InferenceConfig, ModelSpec
from ..utils import console
from .results import FitResult, fit_model


def fit_cache_path(
    cache_dir: Optional[str],
    spec: ModelSpec,
    data: GroupedData,
    config: InferenceConfig,
    kind: str = "fit",
) -> Optional[str]:
    """Cache file of a fit, or ``None`` when caching is disabled."""
    if cache_dir is None:
        return None
    return cache_path(cache_dir, kind, spec.key, fingerprint(data, config))


def _cached_fit(
    spec: ModelSpec,
    data: GroupedData,
    config: InferenceConfig,
    cache_dir: Optional[str],
    overwrite: bool,
) -> FitResult:
    path = fit_cache_path(cache_dir, spec, data, config)
    return load_or_compute(
        path, lambda: fit_model(spec, data, config), overwrite=overwrite
    )


def fit_multiverse(
    specs: Sequence[ModelSpec],
    data: GroupedData,
    config: Optional[InferenceConfig] = None,
    n_jobs: int = -1,
    cache_dir: Optional[str] = None,
    overwrite: bool = False,
    backend: str = "loky",
    verbose: int = 0,
) -> List[FitResult]:
    """
    Fit every candidate model, in parallel and with caching.

    Parameters
    ----------
    specs : sequence of ModelSpec
        Candidate models.
    data : GroupedData
        Data shared by all candidates.
    config : InferenceConfig, optional
        Sampler settings shared by all candidates.
    n_jobs : int, default=-1
        Number of worker processes (joblib convention, ``-1`` = all cores).
    cache_dir : str, optional
        Directory of cached fits. Fits found there are loaded instead of
        recomputed; new fits are written there.
    overwrite : bool, default=False
        Refit and overwrite cached fits.
    backend : str, default="loky"
        joblib backend.
    verbose : int, default=0
        joblib verbosity.

    Returns
    -------
    list of FitResult
        One result per specification, in input order.
    """
    specs = list(specs)
    if not specs:
        raise ValueError("No candidate models to fit.")
    config = config or InferenceConfig()

    console.print(
        f"[bold]Fitting {len(specs)} candidate models[/bold] "
        f"[dim](n_jobs={n_jobs}, cache={cache_dir})[/dim]"
    )
    fits = Parallel(n_jobs=n_jobs, backend=backend, verbose=verbose)(
        delayed(_cached_fit)(spec, data, config, cache_dir, overwrite)
        for spec in specs
    )
    n_div = sum(fit.n_divergences > 0 for fit in fits)
    console.print(
        f"[green]Done.[/green] {len(fits)} fits, "
        f"{n_div} with divergent transitions"
    )
    return list(fits)
