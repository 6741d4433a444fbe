"""Tests for greedyloc.config dataclasses."""

import dataclasses

import mlx.core as mx
import pytest

from greedyloc.config import (
    ConfigurationError,
    ImageSizeError,
    LocalizerConfig,
    TilingConfig,
)


class TestLocalizerConfig:
    """Tests for LocalizerConfig."""

    def test_defaults(self):
        cfg = LocalizerConfig(sigma=1.5)
        assert cfg.patch_size == 16
        assert cfg.max_sources == 8
        assert cfg.min_improvement == 1e-3
        assert cfg.upsample == 2
        assert cfg.pos_bound is None
        assert cfg.mx_dtype == mx.float32

    def test_override(self):
        cfg = LocalizerConfig(sigma=2.0, patch_size=12, max_sources=3, dtype="float64")
        assert cfg.patch_size == 12
        assert cfg.max_sources == 3
        assert cfg.mx_dtype == mx.float64

    def test_frozen(self):
        cfg = LocalizerConfig(sigma=1.5)
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.sigma = 2.0

    def test_with_max_sources(self):
        cfg = LocalizerConfig(sigma=1.5, max_sources=8)
        other = cfg.with_max_sources(2)
        assert other.max_sources == 2
        assert cfg.max_sources == 8
        assert other.sigma == cfg.sigma

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"sigma": 0.0},
            {"sigma": -1.0},
            {"sigma": float("inf")},
            {"sigma": "1.5"},
            {"sigma": 1.5, "patch_size": 0},
            {"sigma": 1.5, "patch_size": 4.5},
            {"sigma": 1.5, "max_sources": -1},
            {"sigma": 1.5, "min_improvement": -1e-3},
            {"sigma": 1.5, "upsample": 0},
            {"sigma": 1.5, "max_iter": 0},
            {"sigma": 1.5, "tol": -1.0},
            {"sigma": 1.5, "pos_margin": -0.1},
            {"sigma": 1.5, "pos_bound": 0.0},
            {"sigma": 1.5, "prune_tol": -1.0},
            {"sigma": 1.5, "dtype": "float16"},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            LocalizerConfig(**kwargs)

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)
        assert issubclass(ImageSizeError, ValueError)


class TestTilingConfig:
    """Tests for TilingConfig."""

    def test_defaults(self):
        cfg = TilingConfig()
        assert cfg.overlap == 0
        assert cfg.dedup_distance is None
        assert cfg.n_workers == 1
        assert cfg.trim_seams is True

    def test_merge_distance(self):
        loc = LocalizerConfig(sigma=1.2)
        assert TilingConfig().merge_distance(loc) == 1.2
        assert TilingConfig(dedup_distance=0.0).merge_distance(loc) == 0.0

    def test_tile_max_sources(self):
        loc = LocalizerConfig(sigma=1.5, patch_size=10, max_sources=5)
        assert TilingConfig().tile_max_sources(loc) == 5
        assert TilingConfig(expected_density=0.001).tile_max_sources(loc) == 1
        assert TilingConfig(expected_density=0.05).tile_max_sources(loc) == 5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"overlap": -1},
            {"dedup_distance": -0.5},
            {"expected_density": 0.0},
            {"n_workers": 0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            TilingConfig(**kwargs)

    def test_overlap_checked_against_patch_size(self):
        TilingConfig(overlap=7).check_patch_size(8)
        with pytest.raises(ConfigurationError):
            TilingConfig(overlap=8).check_patch_size(8)
