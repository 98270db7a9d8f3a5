"""
On-disk caching of expensive results.

Fits, refits and marginal-likelihood estimates are pickled under a cache
directory. A result is read back when its file exists and recomputed (then
written) otherwise. File names combine a result kind, human-readable tokens
and a fingerprint of every input that determines the result, so a change of
data or sampler settings never returns a stale file.
"""

import hashlib
import os
import pickle
import re
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd
from pydantic import BaseModel

from .data_loader import GroupedData
from .utils import console

# ==============================================================================
# Cache keys
# ==============================================================================


def _sanitize_cache_token(value, max_len=48):
    """Create a filesystem-friendly token for cache filenames."""
    as_str = str(value).strip()
    token = re.sub(r"[^A-Za-z0-9_.-]+", "_", as_str).strip("._-")
    if token == "":
        return "none"
    return token[:max_len]


def _update_hash(h, obj):
    """Feed a stable byte representation of ``obj`` into ``h``."""
    if isinstance(obj, GroupedData):
        _update_hash(h, obj.frame)
        h.update(f"{obj.response}|{obj.group}|{obj.group_labels}".encode())
    elif isinstance(obj, pd.DataFrame):
        h.update(
            pd.util.hash_pandas_object(obj, index=True).to_numpy().tobytes()
        )
        h.update(str(list(obj.columns)).encode())
    elif isinstance(obj, BaseModel):
        h.update(obj.model_dump_json().encode())
    elif isinstance(obj, np.ndarray):
        h.update(str(obj.shape).encode())
        h.update(np.ascontiguousarray(obj).tobytes())
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _update_hash(h, item)
    else:
        h.update(repr(obj).encode())


def fingerprint(*objects, length: int = 12) -> str:
    """
    Short SHA-1 fingerprint of the given objects.

    Data frames, :class:`~logoverse.data_loader.GroupedData`, Pydantic models
    and numpy arrays are hashed by content; anything else by ``repr``.
    """
    h = hashlib.sha1()
    for obj in objects:
        _update_hash(h, obj)
        h.update(b"|")
    return h.hexdigest()[:length]


def cache_path(cache_dir: str, kind: str, *tokens) -> str:
    """
    Path of a cache file, ``<cache_dir>/<kind>_<token>_..._<token>.pkl``.

    Parameters
    ----------
    cache_dir : str
        Cache directory (created on demand by :func:`load_or_compute`).
    kind : str
        Kind of result, e.g. ``"fit"`` or ``"bridge"``.
    *tokens
        Further name parts; each one is sanitized for the filesystem.
    """
    parts = [_sanitize_cache_token(kind)]
    parts.extend(_sanitize_cache_token(t) for t in tokens)
    return os.path.join(cache_dir, "_".join(parts) + ".pkl")


# ==============================================================================
# Load or compute
# ==============================================================================


def load_or_compute(
    path: Optional[str],
    compute: Callable[[], Any],
    overwrite: bool = False,
    verbose: bool = False,
) -> Any:
    """
    Return the object pickled at ``path``, computing and storing it first
    when the file is missing.

    Parameters
    ----------
    path : str or None
        Cache file. ``None`` disables caching.
    compute : callable
        Zero-argument function producing the result.
    overwrite : bool, default=False
        Recompute even if the file exists.
    verbose : bool, default=False
        Report cache hits and writes on the console.

    Returns
    -------
    Any
        The cached or freshly computed object.

    Raises
    ------
    pickle.UnpicklingError, EOFError
        If the cache file exists but cannot be read.
    """
    if path is None:
        return compute()

    if os.path.exists(path) and not overwrite:
        if verbose:
            console.print(f"[dim]Found cached result at:[/dim] [cyan]{path}[/cyan]")
        with open(path, "rb") as f:
            return pickle.load(f)

    result = compute()

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    # Write then rename so concurrent readers never see a partial file
    tmp_path = f"{path}.{os.getpid()}.tmp"
    try:
        with open(tmp_path, "wb") as f:
            pickle.dump(result, f)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    if verbose:
        console.print(f"[dim]Saved result to:[/dim] [cyan]{path}[/cyan]")
    return result
