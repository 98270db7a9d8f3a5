"""Candidate model specification using Pydantic."""

import hashlib
from typing import List, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .enums import Family, PriorType


def check_interactions(
    interactions: Tuple[Tuple[str, str], ...]
) -> Tuple[Tuple[str, str], ...]:
    """Reject self-interactions and interactions listed twice (in any
    order)."""
    seen = set()
    for a, b in interactions:
        if a == b:
            raise ValueError(f"Interaction of '{a}' with itself")
        pair = frozenset((a, b))
        if pair in seen:
            raise ValueError(f"Repeated interaction {a} * {b}")
        seen.add(pair)
    return interactions


# ==============================================================================
# ModelSpec
# ==============================================================================


class ModelSpec(BaseModel):
    """
    One candidate model of a multiverse analysis.

    A candidate is fully described by a handful of categorical choices: the
    likelihood family, the prior on the regression coefficients, which
    covariates enter as main effects, which pairwise interactions are included,
    and which random effects are present.

    Interactions follow the usual formula semantics: ``("a", "b")`` stands for
    ``a * b`` and therefore expands into ``a + b + a:b``.  Listing ``a`` (or
    ``b``) again as a main effect next to ``a * b`` is thus a logically invalid
    specification and is rejected.

    Parameters
    ----------
    response : str
        Name of the response column.
    group : str
        Name of the grouping column (the subject identifier).
    family : Family
        Likelihood family.
    prior : PriorType
        Prior on the coefficients.
    covariates : tuple of str
        Main effects.
    interactions : tuple of (str, str)
        Pairwise interactions.
    group_effect : bool
        Include varying intercepts per group, ``(1 | group)``.
    obs_effect : bool
        Include an observation-level random effect, ``(1 | obs)``.

    Notes
    -----
    - Specifications are immutable and hashable; ``key`` is a stable short hash
      used for cache file names.
    - Unrecognized fields are forbidden.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    response: str = Field(..., description="Response column")
    group: str = Field(..., description="Grouping column")
    family: Family = Field(Family.POISSON, description="Likelihood family")
    prior: PriorType = Field(PriorType.NORMAL, description="Coefficient prior")
    covariates: Tuple[str, ...] = Field((), description="Main effects")
    interactions: Tuple[Tuple[str, str], ...] = Field(
        (), description="Pairwise interactions a * b"
    )
    group_effect: bool = Field(True, description="Varying group intercepts")
    obs_effect: bool = Field(False, description="Observation-level effect")

    # --------------------------------------------------------------------------
    # Validation Methods
    # --------------------------------------------------------------------------

    @field_validator("covariates")
    @classmethod
    def validate_covariates(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Reject repeated main effects."""
        if len(set(v)) != len(v):
            raise ValueError(f"Repeated covariates in {v}")
        return v

    # --------------------------------------------------------------------------

    @field_validator("interactions")
    @classmethod
    def validate_interactions(
        cls, v: Tuple[Tuple[str, str], ...]
    ) -> Tuple[Tuple[str, str], ...]:
        """Reject self-interactions and repeated interactions."""
        return check_interactions(v)

    # --------------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_interaction_main_effects(self):
        """An interaction must not coexist with its own main effects."""
        for a, b in self.interactions:
            clash = [c for c in (a, b) if c in self.covariates]
            if clash:
                raise ValueError(
                    f"Interaction {a} * {b} already includes main effect "
                    f"{clash[0]!r}; remove it from the covariates."
                )
        return self

    # --------------------------------------------------------------------------
    # Derived quantities
    # --------------------------------------------------------------------------

    @property
    def terms(self) -> List[str]:
        """Design-matrix terms, interactions expanded into main effects."""
        terms = list(self.covariates)
        for a, b in self.interactions:
            for c in (a, b):
                if c not in terms:
                    terms.append(c)
        terms.extend(f"{a}:{b}" for a, b in self.interactions)
        return terms

    @property
    def n_terms(self) -> int:
        """Number of design terms; categorical terms span several columns."""
        return len(self.terms)

    @property
    def formula(self) -> str:
        """Model formula, e.g. ``count ~ zAge + zBase * Trt + (1 | patient)``."""
        parts = list(self.covariates)
        parts.extend(f"{a} * {b}" for a, b in self.interactions)
        rhs = " + ".join(parts) if parts else "1"
        if self.group_effect:
            rhs += f" + (1 | {self.group})"
        if self.obs_effect:
            rhs += " + (1 | obs)"
        return f"{self.response} ~ {rhs}"

    @property
    def name(self) -> str:
        """Unique human-readable name: formula plus family and prior."""
        return f"{self.formula} [{self.family.value}, {self.prior.value}]"

    @property
    def key(self) -> str:
        """Stable 12-character hash of the specification."""
        payload = self.model_dump_json().encode("utf-8")
        return hashlib.sha1(payload).hexdigest()[:12]

    def __str__(self) -> str:
        return self.name
