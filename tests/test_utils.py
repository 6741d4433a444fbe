"""Tests for pruning, duplicate suppression and array export."""

import numpy as np

from greedyloc import PointSource, prune, sources_from_array, sources_to_array, suppress_duplicates


def test_prune():
    srcs = [PointSource(1.0, 1.0, 0.5), PointSource(2.0, 2.0, 5.0)]
    assert prune(srcs, tol=1.0) == [srcs[1]]
    assert prune(srcs, tol=0.1) == srcs


def test_suppress_duplicates_keeps_brighter():
    dim = PointSource(10.0, 10.0, 3.0)
    bright = PointSource(10.4, 10.3, 7.0)
    far = PointSource(20.0, 5.0, 1.0)
    kept = suppress_duplicates([dim, bright, far], min_dist=1.0)
    assert kept == [bright, far]


def test_suppress_duplicates_chain():
    # b suppresses a and c; a and c are too far apart to interact directly
    a = PointSource(0.0, 0.0, 2.0)
    b = PointSource(0.9, 0.0, 5.0)
    c = PointSource(1.8, 0.0, 3.0)
    assert suppress_duplicates([a, b, c], min_dist=1.0) == [b]


def test_suppress_duplicates_distance_is_strict():
    a = PointSource(0.0, 0.0, 2.0)
    b = PointSource(1.0, 0.0, 5.0)
    assert suppress_duplicates([a, b], min_dist=1.0) == [a, b]


def test_suppress_duplicates_equal_intensity_keeps_first():
    a = PointSource(0.0, 0.0, 2.0)
    b = PointSource(0.5, 0.0, 2.0)
    assert suppress_duplicates([a, b], min_dist=1.0) == [a]


def test_suppress_duplicates_trivial_inputs():
    assert suppress_duplicates([], min_dist=1.0) == []
    a = PointSource(0.0, 0.0, 2.0)
    assert suppress_duplicates([a, PointSource(0.1, 0.0, 1.0)], min_dist=0.0) == [
        a,
        PointSource(0.1, 0.0, 1.0),
    ]


def test_array_conversion():
    srcs = [PointSource(1.5, 2.5, 3.0), PointSource(4.0, 5.0, 6.0)]
    arr = sources_to_array(srcs)
    assert arr.shape == (2, 3)
    np.testing.assert_array_equal(arr[1], [4.0, 5.0, 6.0])
    assert sources_from_array(arr) == srcs
    assert sources_to_array([]).shape == (0, 3)


def test_shifted_is_independent():
    src = PointSource(1.0, 2.0, 3.0)
    moved = src.shifted(10.0, 20.0)
    moved.intensity = 9.0
    assert (moved.x, moved.y) == (11.0, 22.0)
    assert src == PointSource(1.0, 2.0, 3.0)
