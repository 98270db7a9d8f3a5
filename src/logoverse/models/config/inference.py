"""MCMC inference configuration."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class InferenceConfig(BaseModel):
    """
    Settings of the NUTS sampler used to fit every candidate model.

    Parameters
    ----------
    n_samples : int
        Post-warmup draws per chain.
    n_warmup : int
        Warmup (adaptation) iterations per chain.
    n_chains : int
        Number of chains.
    chain_method : {'sequential', 'parallel', 'vectorized'}
        How NumPyro runs multiple chains.
    target_accept_prob : float
        NUTS step-size adaptation target.
    max_tree_depth : int
        Maximum NUTS tree depth.
    seed : int
        Seed of the JAX PRNG key.
    progress_bar : bool
        Show NumPyro's progress bar.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    n_samples: int = Field(1_000, gt=0, description="Draws per chain")
    n_warmup: int = Field(1_000, ge=0, description="Warmup iterations")
    n_chains: int = Field(4, gt=0, description="Number of chains")
    chain_method: Literal["sequential", "parallel", "vectorized"] = Field(
        "sequential", description="NumPyro chain method"
    )
    target_accept_prob: float = Field(
        0.9, gt=0.0, lt=1.0, description="NUTS target acceptance"
    )
    max_tree_depth: int = Field(10, gt=0, description="NUTS tree depth")
    seed: int = Field(42, description="PRNG seed")
    progress_bar: bool = Field(False, description="NumPyro progress bar")

    @property
    def total_draws(self) -> int:
        """Number of posterior draws after flattening the chains."""
        return self.n_samples * self.n_chains
