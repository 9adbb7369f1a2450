import numpy as np
import cv2
import pytest
from celldet.core import estimate_background, subtract_background
from celldet.core.morphology import (
    circular_footprint,
    fill_holes,
    label_components,
    laplacian_of_gaussian,
    rank_max,
    rank_min,
    split_by_shape,
)


def test_circular_footprint_radius_one_is_cross_plus_diagonals():
    fp = circular_footprint(1)
    assert fp.shape == (3, 3)
    assert fp.all()  # r^2 + 1 = 2 reaches the diagonals
    assert circular_footprint(0.5).sum() == 5


def test_rank_filters_zero_radius_copy():
    img = np.arange(16, dtype=np.float32).reshape(4, 4)
    out = rank_min(img, 0)
    assert np.array_equal(out, img) and out is not img
    assert rank_max(img, 1).max() == 15


def test_background_removes_small_spot():
    img = np.full((40, 40), 10.0, np.float32)
    cv2.circle(img, (20, 20), 2, 60.0, -1)
    for by_reconstruction in (True, False):
        sub, est = subtract_background(img, 5, by_reconstruction=by_reconstruction)
        assert est.exclusion_mask is None
        assert np.allclose(est.background, 10.0)
        assert sub[20, 20] == pytest.approx(50.0)
        assert sub[0, 0] == pytest.approx(0.0)


def test_background_never_exceeds_image(rng):
    img = (rng.random((50, 50)) * 100).astype(np.float32)
    est = estimate_background(img, 4)
    assert np.all(est.background <= img + 1e-5)


def test_background_zero_radius_is_noop():
    img = np.full((10, 10), 3.0, np.float32)
    sub, est = subtract_background(img, 0)
    assert np.array_equal(sub, img)
    assert np.all(est.background == 0)


def test_high_background_is_excluded():
    img = np.full((30, 30), 50.0, np.float32)
    sub, est = subtract_background(img, 3, max_background=2.0)
    assert est.exclusion_mask is not None and est.exclusion_mask.all()
    assert np.all(np.isinf(est.background))
    assert np.all(sub == 0)
    # nan disables the exclusion
    _, est = subtract_background(img, 3, max_background=float("nan"))
    assert est.exclusion_mask is None


def test_exclusion_reaches_twice_the_radius():
    img = np.zeros((30, 40), np.float32)
    img[:, 15:] = 50.0
    _, est = subtract_background(img, 3, max_background=2.0)
    # eroded ceiling starts near x=18; one radius of growth would stop at x=15
    assert est.exclusion_mask[:, 13].all()
    assert not est.exclusion_mask[:, :9].any()


def test_log_positive_inside_blob():
    img = np.zeros((41, 41), np.float32)
    cv2.circle(img, (20, 20), 6, 100.0, -1)
    resp = laplacian_of_gaussian(img, 2)
    assert resp[20, 25] > 0      # just inside the edge
    assert resp[20, 28] < 0      # just outside


def test_fill_holes_and_labels():
    m = np.zeros((30, 30), bool)
    m[5:15, 5:15] = True
    m[8:11, 8:11] = False
    m[20:25, 20:25] = True
    filled = fill_holes(m)
    assert filled[9, 9]
    labels, n = label_components(filled)
    assert n == 2 and labels.dtype == np.int32


def test_split_by_shape_separates_touching_discs():
    m = np.zeros((40, 60), np.uint8)
    cv2.circle(m, (20, 20), 10, 1, -1)
    cv2.circle(m, (37, 20), 10, 1, -1)
    split = split_by_shape(m.astype(bool))
    _, n = label_components(split)
    assert n == 2
    single = np.zeros((40, 40), np.uint8)
    cv2.circle(single, (20, 20), 10, 1, -1)
    assert label_components(split_by_shape(single.astype(bool)))[1] == 1
