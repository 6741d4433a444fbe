"""greedyloc: greedy sparse point source localization with tiled stitching.

Built on Apple MLX with a pixel-integrated Gaussian PSF, squared loss and
non-negative intensities.

Primary entry points
--------------------
>>> from greedyloc import ImageLocalizer, localize_patch
>>> result = localize_patch(patch, sigma=1.5, max_sources=4)
>>> sources = ImageLocalizer(sigma=1.5, patch_size=16).localize(image)
"""

from .algorithm import PatchLocalizer, PatchResult, localize_patch
from .config import ConfigurationError, ImageSizeError, LocalizerConfig, TilingConfig
from .model import (
    ForwardModel,
    GreedyInsertionStep,
    PointSource,
    ResidualEngine,
    pack_sources,
)
from .solvers import LocalRefinement, cg_solve
from .tiling import ImageLocalizer, TileResult, tile_origins
from .utils import prune, sources_from_array, sources_to_array, suppress_duplicates

__version__ = "0.1.0"

__all__ = [
    "localize_patch",
    "PatchLocalizer",
    "PatchResult",
    "ImageLocalizer",
    "TileResult",
    "tile_origins",
    # config
    "LocalizerConfig",
    "TilingConfig",
    "ConfigurationError",
    "ImageSizeError",
    # model
    "PointSource",
    "ForwardModel",
    "ResidualEngine",
    "GreedyInsertionStep",
    "pack_sources",
    # solvers
    "LocalRefinement",
    "cg_solve",
    # utils
    "prune",
    "suppress_duplicates",
    "sources_to_array",
    "sources_from_array",
]
