"""Configuration dataclasses and error types.

- LocalizerConfig: PSF, search depth and refinement settings for one patch
- TilingConfig: tiling, merge and worker settings for whole images

Both are frozen and validated on construction, so an invalid setting is
reported before any pixel is touched.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, replace

import mlx.core as mx

DTYPES = {"float32": mx.float32, "float64": mx.float64}


class ConfigurationError(ValueError):
    """Invalid localizer or tiling setting."""


class ImageSizeError(ValueError):
    """Image or patch shape incompatible with the configured patch size."""


def _require(cond, msg):
    if not cond:
        raise ConfigurationError(msg)


@dataclass(frozen=True)
class LocalizerConfig:
    """Settings for the greedy patch localizer."""
    sigma: float                     # PSF standard deviation (pixels)
    patch_size: int = 16             # patch width and height (pixels)
    max_sources: int = 8             # search depth cap
    min_improvement: float = 1e-3    # loss decrease needed to keep an insertion

    # Insertion
    upsample: int = 2                # candidate grid points per pixel

    # Refinement
    max_iter: int = 50               # LM iterations per refinement call
    tol: float = 1e-7                # relative loss decrease to stop LM
    pos_margin: float = 0.5          # allowed travel beyond outer pixel centres
    pos_bound: float | None = None   # optional travel limit around start (±pixels)

    prune_tol: float = 0.0           # drop final sources dimmer than this
    dtype: str = "float32"

    def __post_init__(self):
        _require(
            isinstance(self.sigma, numbers.Real) and math.isfinite(self.sigma)
            and self.sigma > 0,
            f"sigma must be a finite number > 0, got {self.sigma!r}",
        )
        _require(
            isinstance(self.patch_size, int) and self.patch_size > 0,
            f"patch_size must be an integer > 0, got {self.patch_size!r}",
        )
        _require(
            isinstance(self.max_sources, int) and self.max_sources >= 0,
            f"max_sources must be an integer >= 0, got {self.max_sources!r}",
        )
        _require(
            self.min_improvement >= 0,
            f"min_improvement must be >= 0, got {self.min_improvement!r}",
        )
        _require(
            isinstance(self.upsample, int) and self.upsample >= 1,
            f"upsample must be an integer >= 1, got {self.upsample!r}",
        )
        _require(
            isinstance(self.max_iter, int) and self.max_iter >= 1,
            f"max_iter must be an integer >= 1, got {self.max_iter!r}",
        )
        _require(self.tol >= 0, f"tol must be >= 0, got {self.tol!r}")
        _require(self.pos_margin >= 0, f"pos_margin must be >= 0, got {self.pos_margin!r}")
        _require(
            self.pos_bound is None or self.pos_bound > 0,
            f"pos_bound must be None or > 0, got {self.pos_bound!r}",
        )
        _require(self.prune_tol >= 0, f"prune_tol must be >= 0, got {self.prune_tol!r}")
        _require(
            self.dtype in DTYPES,
            f"dtype must be one of {sorted(DTYPES)}, got {self.dtype!r}",
        )

    @property
    def mx_dtype(self):
        return DTYPES[self.dtype]

    def with_max_sources(self, max_sources):
        return replace(self, max_sources=max_sources)


@dataclass(frozen=True)
class TilingConfig:
    """Settings for splitting an image into patch-sized tiles and merging.

    Per-tile source cap: ``ceil(expected_density * patch_size**2)`` when
    ``expected_density`` (emitters per pixel) is given, otherwise the
    localizer's own ``max_sources``.
    """
    overlap: int = 0                        # shared pixels between neighbours
    dedup_distance: float | None = None     # None -> one sigma
    expected_density: float | None = None
    n_workers: int = 1
    trim_seams: bool = True                 # keep only detections in each tile's own cell

    def __post_init__(self):
        _require(
            isinstance(self.overlap, int) and self.overlap >= 0,
            f"overlap must be an integer >= 0, got {self.overlap!r}",
        )
        _require(
            self.dedup_distance is None or self.dedup_distance >= 0,
            f"dedup_distance must be None or >= 0, got {self.dedup_distance!r}",
        )
        _require(
            self.expected_density is None or self.expected_density > 0,
            f"expected_density must be None or > 0, got {self.expected_density!r}",
        )
        _require(
            isinstance(self.n_workers, int) and self.n_workers >= 1,
            f"n_workers must be an integer >= 1, got {self.n_workers!r}",
        )

    def check_patch_size(self, patch_size):
        """Overlap has to leave a positive tile stride."""
        _require(
            self.overlap < patch_size,
            f"overlap ({self.overlap}) must be smaller than patch_size ({patch_size})",
        )

    def tile_max_sources(self, config):
        if self.expected_density is None:
            return config.max_sources
        return max(1, math.ceil(self.expected_density * config.patch_size**2))

    def merge_distance(self, config):
        if self.dedup_distance is None:
            return float(config.sigma)
        return float(self.dedup_distance)
