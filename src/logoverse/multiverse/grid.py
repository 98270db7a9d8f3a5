"""
Grids of candidate models.

A multiverse analysis fits every reasonable combination of modelling choices
instead of committing to one model. The grid is the Cartesian product of the
choices, minus the combinations that are not valid models.
"""

from itertools import chain, combinations, product
from typing import Iterator, List, Sequence, Tuple

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.config import Family, ModelSpec, PriorType
from ..models.config.base import check_interactions

# ==============================================================================
# Choices
# ==============================================================================


class ModelChoices(BaseModel):
    """
    The modelling choices spanned by a multiverse.

    Parameters
    ----------
    response : str
        Response column.
    group : str
        Grouping column.
    families : tuple of Family
        Likelihood families to try.
    priors : tuple of PriorType
        Coefficient priors to try.
    covariates : tuple of str
        Candidate main effects; every subset is tried.
    interactions : tuple of (str, str)
        Candidate pairwise interactions; every subset is tried.
    group_effect : tuple of bool
        Options for the varying group intercepts.
    obs_effect : tuple of bool
        Options for the observation-level effect.
    include_empty : bool
        Include models without any covariate (intercept and random effects
        only).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    response: str
    group: str
    families: Tuple[Family, ...] = Field((Family.POISSON,), min_length=1)
    priors: Tuple[PriorType, ...] = Field((PriorType.NORMAL,), min_length=1)
    covariates: Tuple[str, ...] = ()
    interactions: Tuple[Tuple[str, str], ...] = ()
    group_effect: Tuple[bool, ...] = Field((True,), min_length=1)
    obs_effect: Tuple[bool, ...] = Field((False,), min_length=1)
    include_empty: bool = True

    @field_validator("families", "priors", "covariates", "group_effect",
                     "obs_effect")
    @classmethod
    def validate_unique(cls, v):
        """Each option may be listed once."""
        if len(set(v)) != len(v):
            raise ValueError(f"Repeated options in {v}")
        return v

    @field_validator("interactions")
    @classmethod
    def validate_interactions(cls, v):
        """Interaction candidates follow the same rules as in a model."""
        return check_interactions(v)


# ==============================================================================
# Grid
# ==============================================================================


def _subsets(items: Sequence) -> Iterator[Tuple]:
    """All subsets of ``items``, smallest first, in input order."""
    return chain.from_iterable(
        combinations(items, size) for size in range(len(items) + 1)
    )


def _is_valid(covariates: Tuple[str, ...], interactions) -> bool:
    # a * b expands into a + b + a:b, so neither a nor b may also be listed
    # as a main effect
    for a, b in interactions:
        if a in covariates or b in covariates:
            return False
    return True


def build_model_grid(choices: ModelChoices) -> List[ModelSpec]:
    """
    Enumerate the valid candidate models spanned by ``choices``.

    The grid is the Cartesian product family x prior x covariate subset x
    interaction subset x group-effect option x observation-effect option.
    Combinations in which an interaction coexists with one of its
    constituent main effects are excluded.

    Parameters
    ----------
    choices : ModelChoices
        The modelling choices.

    Returns
    -------
    list of ModelSpec
        In a deterministic order (the nesting order above, smaller subsets
        first).

    Raises
    ------
    ValueError
        If no valid model remains.
    """
    structures = []
    for covs in _subsets(choices.covariates):
        for inters in _subsets(choices.interactions):
            if not _is_valid(covs, inters):
                continue
            if not choices.include_empty and not covs and not inters:
                continue
            structures.append((covs, inters))

    specs = [
        ModelSpec(
            response=choices.response,
            group=choices.group,
            family=family,
            prior=prior,
            covariates=covs,
            interactions=inters,
            group_effect=group_effect,
            obs_effect=obs_effect,
        )
        for family, prior, (covs, inters), group_effect, obs_effect in product(
            choices.families,
            choices.priors,
            structures,
            choices.group_effect,
            choices.obs_effect,
        )
    ]
    if not specs:
        raise ValueError(
            "The model grid is empty; check the covariates, interactions "
            "and include_empty."
        )
    return specs


def grid_to_frame(specs: Sequence[ModelSpec]) -> pd.DataFrame:
    """One row per candidate, one column per modelling choice."""
    return pd.DataFrame(
        [
            {
                "family": spec.family.value,
                "prior": spec.prior.value,
                "covariates": " + ".join(spec.covariates),
                "interactions": " + ".join(
                    f"{a} * {b}" for a, b in spec.interactions
                ),
                "group_effect": spec.group_effect,
                "obs_effect": spec.obs_effect,
                "n_terms": spec.n_terms,
                "formula": spec.formula,
                "name": spec.name,
                "key": spec.key,
            }
            for spec in specs
        ]
    )
