"""
Design matrices for candidate models.

The intercept is handled by the model itself, so the design matrix contains
one column per expanded term: numeric main effects as they are, categorical
main effects as treatment-coded dummies (first level dropped), and
interactions as element-wise products of the columns of their constituents.
"""

from typing import Dict, List, Tuple

import numpy as np
import pandas as pd

from .config import ModelSpec

# ==============================================================================
# Design matrix
# ==============================================================================


def _main_effect_columns(
    frame: pd.DataFrame, term: str
) -> Dict[str, np.ndarray]:
    """Columns of one main effect, keyed by column name."""
    if term not in frame.columns:
        raise ValueError(
            f"Covariate '{term}' not found. "
            f"Available columns: {list(frame.columns)}"
        )
    series = frame[term]
    if pd.api.types.is_bool_dtype(series) or pd.api.types.is_numeric_dtype(
        series
    ):
        return {term: series.to_numpy(dtype=np.float64)}

    dummies = pd.get_dummies(
        series.astype("category"),
        prefix=term,
        prefix_sep="",
        drop_first=True,
        dtype=np.float64,
    )
    return {name: dummies[name].to_numpy() for name in dummies.columns}


# ------------------------------------------------------------------------------


def build_design_matrix(
    frame: pd.DataFrame, spec: ModelSpec
) -> Tuple[np.ndarray, List[str]]:
    """
    Build the design matrix of ``spec`` from ``frame``.

    Parameters
    ----------
    frame : pd.DataFrame
        Data table, one row per observation.
    spec : ModelSpec
        Candidate model.

    Returns
    -------
    X : np.ndarray, shape ``(n, p)``
        Design matrix without intercept column.
    column_names : list of str
        Names of the ``p`` columns, e.g. ``["zAge", "zBase", "Trt",
        "zBase:Trt"]``.

    Raises
    ------
    ValueError
        If a covariate is not a column of ``frame``.
    """
    n = len(frame)
    columns: Dict[str, np.ndarray] = {}
    by_term: Dict[str, Dict[str, np.ndarray]] = {}

    for term in spec.terms:
        if ":" in term:
            continue
        by_term[term] = _main_effect_columns(frame, term)
        columns.update(by_term[term])

    for a, b in spec.interactions:
        for name_a, col_a in by_term[a].items():
            for name_b, col_b in by_term[b].items():
                columns[f"{name_a}:{name_b}"] = col_a * col_b

    if not columns:
        return np.zeros((n, 0), dtype=np.float64), []

    names = list(columns)
    X = np.column_stack([columns[name] for name in names])
    return X, names
