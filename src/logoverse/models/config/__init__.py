"""
Configuration classes for logoverse models.

- ``ModelSpec``: one candidate model (family, prior, covariates,
  interactions, random effects).
- ``InferenceConfig``: NUTS sampler settings.
- Enums of every categorical choice.
"""

from .enums import Family, PriorType, Criterion
from .base import ModelSpec
from .inference import InferenceConfig

__all__ = [
    "Family",
    "PriorType",
    "Criterion",
    "ModelSpec",
    "InferenceConfig",
]
