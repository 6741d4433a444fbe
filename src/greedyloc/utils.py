"""Bookkeeping utilities: pruning, duplicate suppression, array export."""

import numpy as np
from scipy.spatial import cKDTree

from .model import PointSource


def prune(sources, tol=1e-2):
    """Remove sources with intensity below tol."""
    return [s for s in sources if s.intensity >= tol]


def suppress_duplicates(sources, min_dist=1.0):
    """Drop the dimmer of any two sources closer than min_dist.

    Sources are visited brightest first (ties keep input order); a source is
    kept unless an already kept source lies within ``min_dist``. The survivors
    are returned in their original order.
    """
    K = len(sources)
    if K <= 1 or min_dist <= 0:
        return list(sources)

    pos = sources_to_array(sources)[:, :2]
    amp = np.array([s.intensity for s in sources])
    tree = cKDTree(pos)
    neighbours = tree.query_ball_point(pos, r=min_dist)

    order = np.argsort(-amp, kind="stable")
    keep = np.zeros(K, dtype=bool)
    for i in order:
        if not any(keep[j] for j in neighbours[i] if j != i and _closer(pos, i, j, min_dist)):
            keep[i] = True

    return [s for s, k in zip(sources, keep) if k]


def _closer(pos, i, j, min_dist):
    # query_ball_point is inclusive of the radius
    return np.linalg.norm(pos[i] - pos[j]) < min_dist


def sources_to_array(sources):
    """(K, 3) float array of ``[x, y, intensity]`` rows."""
    if not sources:
        return np.zeros((0, 3))
    return np.array([[s.x, s.y, s.intensity] for s in sources], dtype=float)


def sources_from_array(arr):
    """Inverse of :func:`sources_to_array`."""
    arr = np.asarray(arr, dtype=float).reshape(-1, 3)
    return [PointSource(float(x), float(y), float(a)) for x, y, a in arr]
