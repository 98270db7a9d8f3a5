"""Tests for on-disk caching (logoverse.cache)."""

import os
import pickle

import numpy as np
import pytest

from logoverse.cache import cache_path, fingerprint, load_or_compute
from logoverse.models.config import InferenceConfig


# --------------------------------------------------------------------------
# Fingerprints
# --------------------------------------------------------------------------


def test_fingerprint_is_content_based(toy_frame):
    assert fingerprint(toy_frame) == fingerprint(toy_frame.copy())
    changed = toy_frame.copy()
    changed.loc[0, "y"] = 99.0
    assert fingerprint(toy_frame) != fingerprint(changed)


def test_fingerprint_grouped_data(toy_data):
    subset = toy_data.drop_group("a")
    assert fingerprint(toy_data) != fingerprint(subset)
    assert fingerprint(subset) == fingerprint(toy_data.drop_group("a"))


def test_fingerprint_configs_and_arrays():
    assert fingerprint(InferenceConfig()) == fingerprint(InferenceConfig())
    assert fingerprint(InferenceConfig()) != fingerprint(
        InferenceConfig(seed=1)
    )
    assert fingerprint(np.arange(3)) != fingerprint(np.arange(3).reshape(3, 1))
    assert len(fingerprint("x", length=8)) == 8


# --------------------------------------------------------------------------
# Paths
# --------------------------------------------------------------------------


def test_cache_path_sanitizes_tokens(tmp_path):
    path = cache_path(str(tmp_path), "fit", "count ~ 1 + (1 | patient)", None)
    assert os.path.dirname(path) == str(tmp_path)
    name = os.path.basename(path)
    assert name == "fit_count_1_1_patient_None.pkl"


# --------------------------------------------------------------------------
# load_or_compute
# --------------------------------------------------------------------------


def test_load_or_compute_caches(tmp_path):
    calls = []

    def compute():
        calls.append(1)
        return {"value": np.arange(4)}

    path = str(tmp_path / "sub" / "result.pkl")
    first = load_or_compute(path, compute)
    second = load_or_compute(path, compute)
    assert len(calls) == 1
    np.testing.assert_array_equal(first["value"], second["value"])
    assert os.listdir(tmp_path / "sub") == ["result.pkl"]


def test_load_or_compute_overwrite(tmp_path):
    path = str(tmp_path / "result.pkl")
    load_or_compute(path, lambda: 1)
    assert load_or_compute(path, lambda: 2) == 1
    assert load_or_compute(path, lambda: 2, overwrite=True) == 2
    assert load_or_compute(path, lambda: 3) == 2


def test_load_or_compute_without_path():
    calls = []
    for _ in range(2):
        load_or_compute(None, lambda: calls.append(1))
    assert len(calls) == 2


def test_load_or_compute_propagates_errors(tmp_path):
    path = str(tmp_path / "result.pkl")

    def fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        load_or_compute(path, fail)
    assert not os.path.exists(path)


def test_failed_write_leaves_no_files(tmp_path):
    path = str(tmp_path / "result.pkl")
    # Local functions cannot be pickled
    with pytest.raises((pickle.PicklingError, AttributeError)):
        load_or_compute(path, lambda: {"fn": lambda x: x})
    assert os.listdir(tmp_path) == []
