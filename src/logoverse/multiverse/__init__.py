"""
Multiverse analysis: build grids of candidate models and filter them.

- ``ModelChoices`` / ``build_model_grid``: enumerate valid candidates.
- ``FilterConfig`` / ``filter_multiverse``: iterative computational and
  predictive filtering of a ``ModelComparison``.
"""

from .grid import ModelChoices, build_model_grid, grid_to_frame
from .filtering import FilterConfig, FilterResult, filter_multiverse

__all__ = [
    "ModelChoices",
    "build_model_grid",
    "grid_to_frame",
    "FilterConfig",
    "FilterResult",
    "filter_multiverse",
]
