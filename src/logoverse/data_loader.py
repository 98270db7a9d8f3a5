"""
Grouped repeated-measurement data.

Every analysis in logoverse runs on a single table in which each row is one
measurement of one subject (a patient, a survey respondent, ...).  The
``group`` column identifies the subject, so that leave-one-group-out
cross-validation can hold out all measurements of a subject at once.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .utils import console

# ==============================================================================
# GroupedData
# ==============================================================================


@dataclass
class GroupedData:
    """
    Tabular data set of repeated measurements grouped by subject.

    Parameters
    ----------
    frame : pd.DataFrame
        One row per observation.
    response : str
        Name of the response column.
    group : str
        Name of the column identifying the subject (group) of each row.
    group_labels : list, optional
        Ordered list of all group labels. When ``None`` it is taken from the
        sorted unique values of ``frame[group]``. Subsets created with
        :meth:`drop_group` keep the labels of their parent so that the integer
        group coding (and therefore the dimension of the group-level
        parameters of a model) does not change.
    """

    frame: pd.DataFrame
    response: str
    group: str
    group_labels: Optional[List] = None

    _group_idx: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        for column in (self.response, self.group):
            if column not in self.frame.columns:
                raise ValueError(
                    f"Column '{column}' not found. "
                    f"Available columns: {list(self.frame.columns)}"
                )
        self.frame = self.frame.reset_index(drop=True)
        # Categoricals keep every level in subsets, so dummy coding of a
        # data set without some group still produces the same columns
        for column in self.frame.columns:
            if column not in (self.group, self.response) and (
                self.frame[column].dtype == object
                or pd.api.types.is_string_dtype(self.frame[column])
            ):
                self.frame[column] = self.frame[column].astype("category")
        if self.group_labels is None:
            self.group_labels = sorted(pd.unique(self.frame[self.group]))
        else:
            self.group_labels = list(self.group_labels)

        codes = pd.Index(self.group_labels).get_indexer(self.frame[self.group])
        if np.any(codes < 0):
            unknown = set(self.frame[self.group]) - set(self.group_labels)
            raise ValueError(f"Rows with unknown group labels: {unknown}")
        self._group_idx = np.asarray(codes, dtype=np.int32)

    # --------------------------------------------------------------------------

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        response: str,
        group: str,
        standardize: Optional[Sequence[str]] = None,
    ) -> "GroupedData":
        """Build a data set from an in-memory frame, optionally standardizing
        some covariates into ``z<name>`` columns."""
        if standardize:
            frame = standardize_columns(frame, standardize)
        return cls(frame=frame, response=response, group=group)

    # --------------------------------------------------------------------------
    # Derived quantities
    # --------------------------------------------------------------------------

    @property
    def y(self) -> np.ndarray:
        """Response vector as float64."""
        return self.frame[self.response].to_numpy(dtype=np.float64)

    @property
    def group_idx(self) -> np.ndarray:
        """Integer code of each row's group, indexing ``group_labels``."""
        return self._group_idx

    @property
    def n_obs(self) -> int:
        return len(self.frame)

    @property
    def n_groups(self) -> int:
        """Number of group labels (including groups without rows)."""
        return len(self.group_labels)

    @property
    def observed_groups(self) -> np.ndarray:
        """Codes of the groups that actually have rows in this data set."""
        return np.unique(self._group_idx)

    @property
    def obs_idx(self) -> Dict[int, np.ndarray]:
        """Row positions of each observed group code."""
        return {
            int(g): np.flatnonzero(self._group_idx == g)
            for g in self.observed_groups
        }

    # --------------------------------------------------------------------------
    # Subsetting
    # --------------------------------------------------------------------------

    def _check_label(self, label):
        if label not in self.group_labels:
            raise ValueError(
                f"Group '{label}' not found. Available: {self.group_labels}."
            )

    def drop_group(self, label) -> "GroupedData":
        """Return the data set without the rows of group ``label``."""
        self._check_label(label)
        mask = self.frame[self.group] != label
        return GroupedData(
            frame=self.frame.loc[mask],
            response=self.response,
            group=self.group,
            group_labels=self.group_labels,
        )

    def only_group(self, label) -> "GroupedData":
        """Return the rows of group ``label`` only."""
        self._check_label(label)
        mask = self.frame[self.group] == label
        return GroupedData(
            frame=self.frame.loc[mask],
            response=self.response,
            group=self.group,
            group_labels=self.group_labels,
        )

    def __repr__(self) -> str:
        return (
            f"GroupedData(n_obs={self.n_obs}, n_groups={self.n_groups}, "
            f"response='{self.response}', group='{self.group}')"
        )


# ==============================================================================
# Preprocessing
# ==============================================================================


def standardize_columns(
    frame: pd.DataFrame, columns: Sequence[str], prefix: str = "z"
) -> pd.DataFrame:
    """
    Add standardized copies of ``columns`` named ``f"{prefix}{column}"``.

    Columns are centred at their mean and divided by their sample standard
    deviation. Constant columns are only centred.

    Parameters
    ----------
    frame : pd.DataFrame
        Input table; not modified.
    columns : sequence of str
        Numeric columns to standardize.
    prefix : str, default="z"
        Prefix of the new column names.

    Returns
    -------
    pd.DataFrame
        Copy of ``frame`` with the additional columns.
    """
    out = frame.copy()
    for column in columns:
        if column not in out.columns:
            raise ValueError(f"Cannot standardize unknown column '{column}'.")
        values = out[column].astype(float)
        scale = values.std(ddof=1)
        centred = values - values.mean()
        out[f"{prefix}{column}"] = centred / scale if scale > 0 else centred
    return out


# ==============================================================================
# Data Loader
# ==============================================================================


def load_grouped_data(
    path: str,
    response: str,
    group: str,
    standardize: Optional[Sequence[str]] = None,
    comment: str = "#",
) -> GroupedData:
    """
    Load a grouped data set from a CSV file.

    Parameters
    ----------
    path : str
        Path to the CSV file (one row per observation).
    response : str
        Name of the response column.
    group : str
        Name of the grouping column.
    standardize : sequence of str, optional
        Numeric columns to standardize into ``z<name>`` columns.
    comment : str, default="#"
        Lines starting with this character are ignored.

    Returns
    -------
    GroupedData
    """
    _, extension = os.path.splitext(path)
    if extension != ".csv":
        raise ValueError(
            f"Unsupported file format: {extension}. Please use .csv"
        )

    console.print(f"[dim]Loading data from[/dim] {path}")
    frame = pd.read_csv(path, comment=comment)

    if response in frame.columns:
        n_before = len(frame)
        frame = frame.dropna(subset=[response])
        if len(frame) < n_before:
            console.print(
                f"[yellow]Dropped {n_before - len(frame)} rows with missing "
                f"'{response}'[/yellow]"
            )

    data = GroupedData.from_frame(
        frame, response=response, group=group, standardize=standardize
    )
    console.print(
        f"[dim]Loaded[/dim] {data.n_obs} observations in "
        f"{data.n_groups} groups"
    )
    return data


# ------------------------------------------------------------------------------


def simulate_repeated_counts(
    n_subjects: int = 59,
    n_visits: int = 4,
    seed: int = 0,
    intercept: float = 1.8,
    effects: Optional[Dict[str, float]] = None,
    sd_subject: float = 0.5,
    phi: float = 8.0,
) -> GroupedData:
    """
    Simulate an epilepsy-style count data set.

    Each subject has a treatment indicator ``Trt``, a baseline count ``Base``
    and an ``Age``; each of the ``n_visits`` visits records a seizure
    ``count``. Counts follow a negative binomial with mean

        log mu = intercept + b_zBase zBase + b_Trt Trt + b_zAge zAge
                 + b_zBase:Trt zBase Trt + u_subject

    with ``u_subject ~ N(0, sd_subject)`` and shape ``phi``.

    Parameters
    ----------
    n_subjects : int, default=59
        Number of subjects (groups).
    n_visits : int, default=4
        Measurements per subject.
    seed : int, default=0
        Seed of the numpy random generator.
    intercept : float, default=1.8
        Intercept on the log scale.
    effects : dict, optional
        Coefficients of ``zBase``, ``Trt``, ``zAge``, ``zBase:Trt``.
    sd_subject : float, default=0.5
        Standard deviation of the subject intercepts.
    phi : float, default=8.0
        Negative binomial shape (larger is less overdispersed).

    Returns
    -------
    GroupedData
        With columns ``patient``, ``visit``, ``obs``, ``Trt``, ``Base``,
        ``Age``, ``zBase``, ``zAge`` and ``count``; grouped by ``patient``.
    """
    coefs = {"zBase": 0.7, "Trt": -0.3, "zAge": 0.1, "zBase:Trt": 0.1}
    if effects:
        coefs.update(effects)

    rng = np.random.default_rng(seed)
    trt = rng.integers(0, 2, size=n_subjects)
    base = rng.gamma(shape=2.0, scale=15.0, size=n_subjects).round() + 5
    age = rng.normal(29.0, 6.0, size=n_subjects).round()
    u = rng.normal(0.0, sd_subject, size=n_subjects)

    subjects = pd.DataFrame(
        {"patient": np.arange(1, n_subjects + 1), "Trt": trt, "Base": base,
         "Age": age}
    )
    subjects = standardize_columns(subjects, ["Age"])
    # log(Base) is the usual covariate for the baseline rate
    log_base = np.log(subjects["Base"])
    subjects["zBase"] = (log_base - log_base.mean()) / log_base.std(ddof=1)

    frame = subjects.loc[subjects.index.repeat(n_visits)].reset_index(
        drop=True
    )
    frame["visit"] = np.tile(np.arange(1, n_visits + 1), n_subjects)
    frame["obs"] = np.arange(1, len(frame) + 1)

    eta = (
        intercept
        + coefs["zBase"] * frame["zBase"]
        + coefs["Trt"] * frame["Trt"]
        + coefs["zAge"] * frame["zAge"]
        + coefs["zBase:Trt"] * frame["zBase"] * frame["Trt"]
        + np.repeat(u, n_visits)
    )
    mu = np.exp(eta.to_numpy())
    # Gamma-Poisson mixture with mean mu and shape phi
    rate = rng.gamma(shape=phi, scale=mu / phi)
    frame["count"] = rng.poisson(rate)

    return GroupedData(frame=frame, response="count", group="patient")
