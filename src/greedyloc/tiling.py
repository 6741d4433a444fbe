"""Tiled localization of images larger than one patch.

The image is cut into ``patch_size x patch_size`` tiles that overlap by
``overlap`` pixels; the last tile along each axis is shifted back so that it
ends on the image border. Tiles are localized independently (optionally on a
thread pool), then merged once every tile has finished:

  1. tile-local coordinates are translated to global ones;
  2. with ``trim_seams`` each tile keeps only detections inside its own cell,
     whose edges sit at the middle of the overlap with each neighbour;
  3. of any two detections closer than ``dedup_distance`` only the brighter
     one survives.
"""

import concurrent.futures
import logging
from dataclasses import dataclass

import numpy as np

from .algorithm import PatchLocalizer, PatchResult
from .config import ImageSizeError, LocalizerConfig, TilingConfig
from .utils import suppress_duplicates

logger = logging.getLogger(__name__)


@dataclass
class TileResult:
    """Patch result of the tile whose top-left pixel is ``origin = (row, col)``."""

    origin: tuple
    result: PatchResult


def tile_origins(length, patch_size, overlap=0):
    """Start indices of tiles along one axis of ``length`` pixels."""
    if length < patch_size:
        raise ImageSizeError(f"axis of length {length} is smaller than patch_size {patch_size}")
    step = patch_size - overlap
    starts = list(range(0, length - patch_size + 1, step))
    if starts[-1] != length - patch_size:
        starts.append(length - patch_size)
    return starts


def seam_bounds(starts, patch_size):
    """Closed ownership interval ``(lo, hi)`` of every tile along one axis.

    Neighbouring tiles split their shared pixels at the midpoint; the outer
    tiles are unbounded towards the image border.
    """
    cuts = [(s + t + patch_size - 1) / 2.0 for s, t in zip(starts[:-1], starts[1:])]
    lows = [-np.inf] + cuts
    highs = cuts + [np.inf]
    return dict(zip(starts, zip(lows, highs)))


class ImageLocalizer:
    """Localize point sources in an image of any size >= ``patch_size``.

    Parameters
    ----------
    config : LocalizerConfig for the per-tile search (or its fields as kwargs)
    tiling : TilingConfig, defaults to non-overlapping sequential tiles
    """

    def __init__(self, config=None, tiling=None, **kwargs):
        if config is None:
            config = LocalizerConfig(**kwargs)
        elif kwargs:
            raise TypeError("pass either a LocalizerConfig or keyword settings, not both")
        if tiling is None:
            tiling = TilingConfig()
        tiling.check_patch_size(config.patch_size)

        self.config = config
        self.tiling = tiling
        self.tile_config = config.with_max_sources(tiling.tile_max_sources(config))
        self.dedup_distance = tiling.merge_distance(config)

    def _check_image(self, image):
        image = np.asarray(image)
        if image.ndim != 2:
            raise ImageSizeError(f"expected a 2D image, got shape {image.shape}")
        P = self.config.patch_size
        if image.shape[0] < P or image.shape[1] < P:
            raise ImageSizeError(
                f"image of shape {image.shape} is smaller than patch_size {P}"
            )
        return image

    def localize_tiles(self, image):
        """Run one :class:`PatchLocalizer` per tile; results in row-major tile order."""
        image = self._check_image(image)
        P = self.config.patch_size
        rows = tile_origins(image.shape[0], P, self.tiling.overlap)
        cols = tile_origins(image.shape[1], P, self.tiling.overlap)
        origins = [(r, c) for r in rows for c in cols]

        def run(origin):
            r, c = origin
            localizer = PatchLocalizer(self.tile_config)
            return TileResult(origin, localizer.localize(image[r : r + P, c : c + P]))

        n_workers = min(self.tiling.n_workers, len(origins))
        if n_workers == 1:
            tiles = [run(o) for o in origins]
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=n_workers) as executor:
                tiles = list(executor.map(run, origins))

        n_aborted = sum(t.result.aborted for t in tiles)
        if n_aborted:
            logger.warning("%d of %d tile(s) stopped early on non-finite data", n_aborted, len(tiles))
        return tiles

    def merge(self, tiles):
        """Translate tile detections to global coordinates and deduplicate.

        Seam cells are widened by ``dedup_distance`` on their interior sides,
        so an emitter on a cut is seen by both neighbours and distance
        deduplication picks between the estimates.
        """
        P = self.config.patch_size
        pad = self.dedup_distance
        row_bounds = seam_bounds(sorted({t.origin[0] for t in tiles}), P)
        col_bounds = seam_bounds(sorted({t.origin[1] for t in tiles}), P)

        detections = []
        for tile in tiles:
            r0, c0 = tile.origin
            (ylo, yhi), (xlo, xhi) = row_bounds[r0], col_bounds[c0]
            for src in tile.result.sources:
                g = src.shifted(c0, r0)
                inside = (
                    xlo - pad <= g.x <= xhi + pad and ylo - pad <= g.y <= yhi + pad
                )
                if self.tiling.trim_seams and not inside:
                    continue
                detections.append(g)

        merged = suppress_duplicates(detections, min_dist=self.dedup_distance)
        logger.info(
            "merged %d tile(s): %d detection(s), %d after deduplication",
            len(tiles), len(detections), len(merged),
        )
        return merged

    def localize(self, image):
        """Return the global list of point sources found in ``image``."""
        return self.merge(self.localize_tiles(image))
