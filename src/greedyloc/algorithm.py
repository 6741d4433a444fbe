"""Greedy insert / refine / check localization of a single patch.

Overview
--------
The patch loop grows an active set of point sources one emitter at a time:

  1. Insert  — correlate the current residual with the unit PSF on a
               sub-pixel candidate grid; the best candidate, with its
               least-squares intensity, is appended to the active set.
  2. Refine  — bounded Levenberg-Marquardt jointly over the positions and
               intensities of every active source (intensity >= 0).
  3. Check   — the loss decrease bought by the insertion,

                   delta = loss_before_insert - loss_after_refine,

               is compared to ``min_improvement``. A full active set
               (``max_sources``) ends the search as is; an insertion that
               does not pay for itself is rolled back and ends the search.

The loop has no randomness: identical inputs give identical results.

Key parameters
--------------
max_sources     : hard cap on the number of emitters per patch.
min_improvement : smallest squared-loss decrease that justifies one more
                  emitter. With Gaussian read noise of variance s^2, a value
                  of a few times s^2 rejects most noise-only insertions.
upsample        : candidate grid points per pixel for the insertion search.

Typical call on a background-subtracted 16 x 16 patch:

    result = localize_patch(patch, sigma=1.5, max_sources=4, min_improvement=1e-3)
    for src in result.sources:
        print(src.x, src.y, src.intensity)
"""

import copy
import logging
import math
from dataclasses import dataclass, field

import mlx.core as mx

from .config import LocalizerConfig
from .model import (
    ForwardModel,
    GreedyInsertionStep,
    ResidualEngine,
    as_image,
    pack_sources,
)
from .solvers import LocalRefinement
from .utils import prune

logger = logging.getLogger(__name__)


@dataclass
class PatchResult:
    """Outcome of one patch run.

    sources : final active set
    loss    : squared loss of the final active set (nan if the patch itself
              is non-finite)
    history : loss of every accepted state, starting with the empty set
    n_iter  : number of insertions attempted
    aborted : True when a non-finite loss stopped the run early
    """

    sources: list
    loss: float
    history: list = field(default_factory=list)
    n_iter: int = 0
    aborted: bool = False


class PatchLocalizer:
    """Greedy sparse localizer for one ``patch_size x patch_size`` patch.

    Build it from a :class:`~greedyloc.config.LocalizerConfig` or from the
    same fields as keyword arguments::

        PatchLocalizer(sigma=1.5, patch_size=16, max_sources=2)
    """

    def __init__(self, config=None, **kwargs):
        if config is None:
            config = LocalizerConfig(**kwargs)
        elif kwargs:
            raise TypeError("pass either a LocalizerConfig or keyword settings, not both")
        self.config = config
        self.model = ForwardModel(config.sigma, config.patch_size, dtype=config.dtype)
        self.insertion = GreedyInsertionStep(self.model, upsample=config.upsample)
        self.refinement = LocalRefinement(
            self.model,
            max_iter=config.max_iter,
            tol=config.tol,
            pos_margin=config.pos_margin,
            pos_bound=config.pos_bound,
        )

    def localize(self, image):
        """Run the insert / refine / check loop on ``image``."""
        cfg = self.config
        engine = ResidualEngine(self.model, image)
        observed = engine.observed

        # INIT
        active = []
        loss = mx.sum(observed * observed).item()
        if not math.isfinite(loss):
            logger.warning("non-finite pixels in patch; returning no sources")
            return PatchResult(sources=[], loss=math.nan, aborted=True)
        history = [loss]
        n_iter = 0

        while len(active) < cfg.max_sources:
            n_iter += 1
            previous = copy.deepcopy(active)
            loss_before = loss

            # INSERT
            residual = engine.residual(pack_sources(active, self.model.dtype))
            active.append(self.insertion.propose(residual))

            # REFINE
            loss = self.refinement.refine(engine, active)
            if not math.isfinite(loss):
                logger.warning(
                    "non-finite loss after refining K=%d; keeping the previous %d source(s)",
                    len(active), len(previous),
                )
                return PatchResult(
                    sources=[s for s in previous if s.intensity > 0.0],
                    loss=loss_before, history=history, n_iter=n_iter, aborted=True,
                )

            # CHECK
            delta = loss_before - loss
            logger.debug(
                "iter %3d | K=%3d | loss=%.6g | delta=%.6g", n_iter, len(active), loss, delta
            )
            if len(active) == cfg.max_sources:
                history.append(loss)
                break
            if delta < cfg.min_improvement:
                logger.debug(
                    "delta %.6g below min_improvement %.6g; rolling back insertion",
                    delta, cfg.min_improvement,
                )
                active = previous
                loss = loss_before
                break
            history.append(loss)

        # zero-intensity sources render nothing; dropping them keeps the loss
        active = [s for s in active if s.intensity > 0.0]

        if cfg.prune_tol > 0:
            kept = prune(active, tol=cfg.prune_tol)
            if len(kept) != len(active):
                logger.debug("pruned %d source(s) below %.4g", len(active) - len(kept), cfg.prune_tol)
                active = kept
                loss = engine.loss_of(active)

        return PatchResult(sources=active, loss=loss, history=history, n_iter=n_iter)


def localize_patch(image, sigma, max_sources, min_improvement=1e-3, **options):
    """Functional entry point: build a :class:`PatchLocalizer` and run it.

    ``patch_size`` defaults to the image's side length.
    """
    options.setdefault("patch_size", int(as_image(image).shape[0]))
    config = LocalizerConfig(
        sigma=sigma, max_sources=max_sources, min_improvement=min_improvement, **options
    )
    return PatchLocalizer(config).localize(image)
