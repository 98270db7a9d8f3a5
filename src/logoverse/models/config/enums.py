"""
Enums for model configuration.

Every categorical modelling choice of a candidate model is an enum here, so
that grids of candidate models can only be built from valid options and
configuration files are validated on load.
"""

from enum import Enum

# ==============================================================================
# Enums for model configuration
# ==============================================================================


class Family(str, Enum):
    """Supported likelihood families."""

    GAUSSIAN = "gaussian"
    POISSON = "poisson"
    NEGBINOMIAL = "negbinomial"

    @property
    def is_count(self) -> bool:
        """Whether the family models non-negative integer counts."""
        return self in (Family.POISSON, Family.NEGBINOMIAL)


# ------------------------------------------------------------------------------


class PriorType(str, Enum):
    """Supported priors on the regression coefficients."""

    NORMAL = "normal"
    WIDE = "wide"
    STUDENT_T = "student_t"
    HORSESHOE = "horseshoe"


# ------------------------------------------------------------------------------


class Criterion(str, Enum):
    """Predictive criteria that a model comparison can hold."""

    PSIS_LOO = "psis_loo"
    PSIS_LOGO = "psis_logo"
    PSIS_LOO_INTEGRATED = "psis_loo_integrated"
    PSIS_LOGO_INTEGRATED = "psis_logo_integrated"
    EXACT_LOGO = "exact_logo"
    BRIDGE_LOGO = "bridge_logo"
    LAPLACE_LOGO = "laplace_logo"

    @property
    def uses_psis(self) -> bool:
        """Whether the criterion comes with Pareto k-hat diagnostics."""
        return self.value.startswith("psis")
