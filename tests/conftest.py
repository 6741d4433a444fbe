"""
Shared pytest fixtures for greedyloc tests.
"""

import numpy as np
import pytest

from greedyloc import ForwardModel, PointSource


@pytest.fixture
def random_seed():
    """Fixed random seed for reproducibility."""
    return 20260219


@pytest.fixture
def rng(random_seed):
    """NumPy random generator with fixed seed."""
    return np.random.default_rng(random_seed)


@pytest.fixture
def render():
    """Noiseless image of (x, y, intensity) tuples as a NumPy array."""

    def _render(sources, sigma=1.5, shape=(16, 16)):
        H, W = shape
        model = ForwardModel(sigma, max(H, W))
        img = np.array(model.render([PointSource(*s) for s in sources]))
        return img[:H, :W].astype(np.float64)

    return _render
