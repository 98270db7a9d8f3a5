"""
Shared test fixtures and configuration for logoverse tests.
"""

import os

import numpy as np
import pandas as pd
import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--device",
        default="cpu",
        choices=["cpu", "gpu"],
        help="Device to run tests on: cpu or gpu",
    )
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run tests that fit models with NUTS",
    )


def pytest_configure(config):
    """Configure JAX device before any imports happen."""
    device = config.getoption("--device")
    if device == "cpu":
        os.environ["JAX_PLATFORM_NAME"] = "cpu"
    else:
        # Remove the environment variable to allow JAX to use GPU
        if "JAX_PLATFORM_NAME" in os.environ:
            del os.environ["JAX_PLATFORM_NAME"]


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --run-slow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ------------------------------------------------------------------------------
# Data fixtures
# ------------------------------------------------------------------------------


@pytest.fixture(scope="session")
def small_counts():
    """Simulated epilepsy-style counts: 12 patients x 4 visits."""
    from logoverse.data_loader import simulate_repeated_counts

    return simulate_repeated_counts(n_subjects=12, n_visits=4, seed=1)


@pytest.fixture
def toy_frame():
    """Tiny table with a numeric, a categorical and a grouping column."""
    return pd.DataFrame(
        {
            "subject": ["a", "a", "b", "b", "c", "c"],
            "x": [0.5, -1.0, 2.0, 0.0, 1.5, -0.5],
            "arm": ["ctl", "trt", "ctl", "trt", "ctl", "dose"],
            "y": [1.0, 2.0, 0.0, 3.0, 4.0, 1.0],
        }
    )


@pytest.fixture
def toy_data(toy_frame):
    from logoverse.data_loader import GroupedData

    return GroupedData(frame=toy_frame, response="y", group="subject")


@pytest.fixture
def make_fit():
    """Build a ``FitResult`` from hand-made draws, without running NUTS."""
    from logoverse.mcmc import FitResult
    from logoverse.models import pointwise_log_likelihood

    def _make(spec, data, samples, n_divergences=0, max_rhat=1.0):
        return FitResult(
            spec=spec,
            samples=samples,
            log_lik=pointwise_log_likelihood(samples, data, spec),
            n_divergences=n_divergences,
            max_rhat=max_rhat,
            min_ess=1000.0,
            param_summary=pd.DataFrame(),
        )

    return _make


@pytest.fixture
def gaussian_posterior(toy_data):
    """Draws of the Gaussian varying-intercept model on ``toy_data``."""
    rng = np.random.default_rng(11)
    S = 400
    return {
        "b_Intercept": rng.normal(1.8, 0.3, S),
        "sd_group": rng.uniform(0.3, 0.9, S),
        "z_group": rng.normal(size=(S, toy_data.n_groups)),
        "sigma": rng.uniform(1.0, 1.6, S),
    }
