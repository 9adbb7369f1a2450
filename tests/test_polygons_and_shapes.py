import math

import numpy as np
import pytest
from celldet.addons import (
    caliper_diameters,
    clip_vertices_to,
    ellipse_axes,
    nearest_on_boundary,
    polygon_area,
    shape_measurements,
)
from celldet.core import InvalidInputError, PolygonROI, make_roi_mask, trace_label_polygon
from celldet.core.assemble import interpolate_polygon, polygon_to_roi, simplify_polygon, smooth_polygon


def _circle(r=10.0, n=360, cx=0.0, cy=0.0):
    a = np.linspace(0, 2 * np.pi, n, endpoint=False)
    return np.column_stack([cx + r * np.cos(a), cy + r * np.sin(a)])


def test_trace_label_polygon_uses_pixel_edges():
    labels = np.zeros((20, 20), np.int32)
    labels[5:9, 3:7] = 2
    pts = trace_label_polygon(labels, 2)
    assert pts[:, 0].min() == pytest.approx(3.0)
    assert pts[:, 0].max() == pytest.approx(7.0)
    assert pts[:, 1].min() == pytest.approx(5.0)
    assert pts[:, 1].max() == pytest.approx(9.0)
    # corners are cut by marching squares
    assert polygon_area(pts) == pytest.approx(16 - 0.5)
    assert trace_label_polygon(labels, 3) is None


def test_trace_label_polygon_at_image_border():
    labels = np.zeros((10, 10), np.int32)
    labels[:4, :4] = 1
    pts = trace_label_polygon(labels, 1)
    assert pts.min() == pytest.approx(0.0)
    assert polygon_area(pts) == pytest.approx(15.5)


def test_interpolate_and_smooth():
    square = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], float)
    dense = interpolate_polygon(square, 1.0)
    assert len(dense) == 40
    smoothed = smooth_polygon(dense)
    assert len(smoothed) == 20
    # smoothing only rounds the corners
    assert polygon_area(smoothed) == pytest.approx(100, rel=0.05)


def test_simplify_reduces_vertices():
    circ = _circle(20, 720)
    simple = simplify_polygon(circ, 0.5)
    assert 8 < len(simple) < len(circ)
    assert polygon_area(simple) == pytest.approx(polygon_area(circ), rel=0.05)


def test_polygon_to_roi_maps_to_image_space():
    square = np.array([[0, 0], [20, 0], [20, 20], [0, 20]], float)
    roi = polygon_to_roi(square, smooth=False, origin=(100, 50), downsample=2.0)
    assert roi.bounds() == pytest.approx((100, 50, 140, 90))
    smooth = polygon_to_roi(square, smooth=True, origin=(0, 0), downsample=1.0)
    assert smooth.area == pytest.approx(400, rel=0.05)
    assert not smooth.is_empty


def test_polygon_roi_basics():
    roi = PolygonROI.rectangle(2, 3, 10, 5, z=1)
    assert roi.area == pytest.approx(50)
    assert roi.z == 1 and len(roi) == 4
    assert roi.contains(PolygonROI.rectangle(4, 4, 2, 2))
    assert not roi.contains(PolygonROI.rectangle(10, 4, 5, 2))
    assert PolygonROI(np.zeros((2, 2))).is_empty
    assert np.allclose(roi.to_region((2, 3), 2.0)[2], [5, 2.5])


def test_make_roi_mask_pixel_centres():
    mask = make_roi_mask((10, 10), [[2, 2], [6, 2], [6, 5], [2, 5]])
    assert mask.sum() == 12
    assert mask[2:5, 2:6].all()
    assert make_roi_mask((3, 4)).all()


def test_make_roi_mask_rejects_bad_input():
    with pytest.raises(InvalidInputError):
        make_roi_mask((0, 10))
    with pytest.raises(InvalidInputError):
        make_roi_mask((10, 10), [[0, 0], [5, 5]])
    with pytest.raises(InvalidInputError):
        make_roi_mask((10, 10), [[20, 20], [30, 20], [30, 30], [20, 30]])


def test_shape_measurements_circle():
    m = shape_measurements(_circle(10), prefix="Nucleus: ")
    assert m["Nucleus: Area"] == pytest.approx(math.pi * 100, rel=1e-3)
    assert m["Nucleus: Perimeter"] == pytest.approx(2 * math.pi * 10, rel=1e-3)
    assert m["Nucleus: Circularity"] > 0.99
    assert m["Nucleus: Max caliper"] == pytest.approx(20, rel=1e-3)
    assert m["Nucleus: Min caliper"] == pytest.approx(20, rel=1e-2)
    assert m["Nucleus: Eccentricity"] < 0.1
    assert m["Nucleus: Solidity"] == pytest.approx(1.0, rel=1e-3)


def test_shape_measurements_calibrated_rectangle():
    rect = np.array([[0, 0], [20, 0], [20, 10], [0, 10]], float)
    m = shape_measurements(rect, umx=0.5, umy=0.5)
    assert m["Area"] == pytest.approx(50)
    assert m["Perimeter"] == pytest.approx(30)
    assert m["Min caliper"] == pytest.approx(5)
    assert m["Max caliper"] == pytest.approx(math.hypot(10, 5))


def test_shape_measurements_degenerate():
    m = shape_measurements(np.array([[0, 0], [1, 1], [2, 2]], float))
    assert all(math.isnan(v) for v in m.values())


def test_ellipse_fallback_and_calipers():
    minor, major = ellipse_axes(np.array([[0, 0], [4, 0], [4, 4], [0, 4]], float))
    assert minor == pytest.approx(major)
    cmin, cmax = caliper_diameters(np.array([[0, 0], [1, 0]], float))
    assert cmin == 0 and cmax == 0


def test_nearest_on_boundary():
    square = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], float)
    q, d = nearest_on_boundary(np.array([[5, -2], [12, 12], [5, 4]], float), square)
    assert np.allclose(q, [[5, 0], [10, 10], [5, 0]])
    assert np.allclose(d, [2, math.hypot(2, 2), 4])


def test_clip_vertices_to_container():
    cell = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], float)
    nucleus = np.array([[2, 2], [10.3, 2], [10.3, 8], [2, 8]], float)
    clipped = clip_vertices_to(nucleus, cell)
    assert np.allclose(clipped, [[2, 2], [10, 2], [10, 8], [2, 8]])
    assert PolygonROI(cell).contains(PolygonROI(clipped))
    # vertices already inside are untouched
    inner = np.array([[1, 1], [4, 1], [4, 4]], float)
    assert np.array_equal(clip_vertices_to(inner, cell), inner)
