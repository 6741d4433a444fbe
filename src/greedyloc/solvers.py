"""Bounded joint refinement of all active sources."""

import logging
import math

import mlx.core as mx

from .model import EPS, pack_sources, unpack_into

logger = logging.getLogger(__name__)

MU_MIN = 1e-10
MU_MAX = 1e8


def cg_solve(matvec, rhs, n_iter=20, tol=1e-6):
    """Conjugate gradient for Ax = b with A given by matvec.

    Stops once ``||b - Ax|| <= tol * ||b||``.
    """
    x = mx.zeros_like(rhs)
    r = rhs
    p = r
    rr = mx.sum(r * r)
    mx.eval(x, r, p, rr)
    stop = tol * tol * rr.item()

    for _ in range(n_iter):
        if rr.item() <= stop:
            break
        Ap = matvec(p)
        pAp = mx.sum(p * Ap)
        mx.eval(pAp)
        if pAp.item() <= 0.0:
            break
        alpha = rr / pAp
        x = x + alpha * p
        r = r - alpha * Ap
        rr_new = mx.sum(r * r)
        beta = rr_new / rr
        p = r + beta * p
        rr = rr_new
        mx.eval(x, r, p, rr)

    return x


def position_bounds(theta, patch_size, pos_margin=0.5, pos_bound=None):
    """Box constraints for a packed parameter vector.

    Positions stay within ``[-pos_margin, patch_size - 1 + pos_margin]`` and,
    when ``pos_bound`` is set, within ``pos_bound`` of their start. Intensities
    are bounded below by zero only.
    """
    K = theta.size // 3
    lo = -pos_margin
    hi = patch_size - 1 + pos_margin
    lower = mx.array([lo, lo, 0.0] * K, dtype=theta.dtype)
    upper = mx.array([hi, hi, math.inf] * K, dtype=theta.dtype)
    if pos_bound is not None:
        travel = mx.array([pos_bound, pos_bound, math.inf] * K, dtype=theta.dtype)
        lower = mx.maximum(lower, theta - travel)
        upper = mx.minimum(upper, theta + travel)
    return lower, upper


class LocalRefinement:
    """Projected Levenberg-Marquardt over every source of the active set.

    Each iteration solves the Marquardt-scaled damped normal equations

        (S J^T J S + mu I) d = S J^T r,    step = S d,   S = diag(J^T J)^-1/2

    with conjugate gradients and projects the step onto the box constraints.
    Only strictly improving iterates are accepted, so the returned loss is
    never above the starting loss.
    """

    def __init__(self, model, max_iter=50, tol=1e-7, pos_margin=0.5, pos_bound=None, mu0=1e-3):
        self.model = model
        self.max_iter = max_iter
        self.tol = tol
        self.pos_margin = pos_margin
        self.pos_bound = pos_bound
        self.mu0 = mu0

    def refine(self, engine, sources):
        """Refine ``sources`` in place against ``engine.observed``; return the loss."""
        theta = pack_sources(sources, self.model.dtype)
        loss = engine.loss(theta)
        if not sources or not math.isfinite(loss):
            return loss

        start_loss = loss
        lower, upper = position_bounds(
            theta, self.model.patch_size, self.pos_margin, self.pos_bound
        )
        n = theta.size
        mu = self.mu0
        n_accept = 0
        it = 0

        for it in range(self.max_iter):
            _, J, grad = engine.linearize(theta)
            JTJ = J.T @ J
            scale = 1.0 / mx.sqrt(mx.diagonal(JTJ) + EPS)
            A = scale[:, None] * JTJ * scale[None, :]
            rhs = -0.5 * scale * grad
            mx.eval(A, rhs)

            damping = mu
            step_hat = cg_solve(lambda v: A @ v + damping * v, rhs, n_iter=2 * n)
            cand = mx.clip(theta + scale * step_hat, lower, upper)
            cand_loss = engine.loss(cand)

            if math.isfinite(cand_loss) and cand_loss < loss:
                rel_drop = (loss - cand_loss) / loss
                theta = cand
                loss = cand_loss
                n_accept += 1
                mu = max(mu * 0.5, MU_MIN)
                if rel_drop < self.tol:
                    break
            else:
                mu = mu * 4.0
                if mu > MU_MAX:
                    break

        unpack_into(theta, sources)
        logger.debug(
            "refine K=%d loss %.6g -> %.6g (%d/%d steps accepted)",
            len(sources), start_loss, loss, n_accept, it + 1,
        )
        return loss
