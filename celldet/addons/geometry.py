"""
Polygon geometry utilities (calibrated domain).

- Scale pixel polygons by per-axis pixel sizes
- Area and perimeter
- Min/max caliper (Feret) diameters
- Ellipse-fit axes with robust fallback
- Keeping one polygon inside another
"""

from __future__ import annotations
import math
from typing import Tuple
import numpy as np
import cv2
from skimage.measure import points_in_poly


def polygon_px_to_um(points_px: np.ndarray, umx: float, umy: float) -> np.ndarray:
    """Scale an (N, 2) x/y polygon by the pixel sizes (umx, umy)."""
    p = np.asarray(points_px, dtype=np.float64).reshape(-1, 2).copy()
    p[:, 0] *= umx
    p[:, 1] *= umy
    return p


def polygon_area(points: np.ndarray) -> float:
    """Unsigned shoelace area of a closed polygon."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(p) < 3:
        return 0.0
    x, y = p[:, 0], p[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def perimeter(points: np.ndarray) -> float:
    """Length of the closed polygon boundary."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(p) < 2:
        return 0.0
    d = np.diff(np.vstack([p, p[:1]]), axis=0)
    return float(np.hypot(d[:, 0], d[:, 1]).sum())


def caliper_diameters(points: np.ndarray, step_deg: int = 2) -> Tuple[float, float]:
    """Return (min_caliper, max_caliper) via a brute-force angular sweep."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3:
        return 0.0, 0.0
    pts0 = pts - pts.mean(axis=0)
    angles = np.radians(np.arange(0, 180, max(1, step_deg)))
    proj = pts0 @ np.stack([np.cos(angles), np.sin(angles)])
    widths = proj.max(axis=0) - proj.min(axis=0)
    # exact maximum from vertex pairs on the hull
    hull = cv2.convexHull(pts.astype(np.float32)).reshape(-1, 2).astype(np.float64)
    diff = hull[:, None, :] - hull[None, :, :]
    max_cal = float(np.sqrt((diff ** 2).sum(axis=-1)).max()) if len(hull) > 1 else 0.0
    return float(widths.min()), max(max_cal, float(widths.max()))


def ellipse_axes(points: np.ndarray) -> Tuple[float, float]:
    """
    Return (minor_axis, major_axis) from an ellipse fit.
    Falls back to the equal-area circle if the fit fails or points < 5.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if pts.shape[0] >= 5:
        try:
            (_, _), (MA, ma), _ = cv2.fitEllipse(pts)
            a, b = max(MA, ma), min(MA, ma)
            if a > 0 and math.isfinite(a) and math.isfinite(b):
                return float(b), float(a)
        except cv2.error:
            pass
    area = polygon_area(pts)
    if area <= 0:
        return 0.0, 0.0
    d_eq = 2.0 * math.sqrt(area / math.pi)
    return float(d_eq), float(d_eq)


def convex_area(points: np.ndarray) -> float:
    """Area of the convex hull."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if len(pts) < 3:
        return 0.0
    return float(cv2.contourArea(cv2.convexHull(pts)))


def nearest_on_boundary(points: np.ndarray, polygon: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """For each point, the closest point on the closed polygon boundary and its distance."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    a = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    b = np.roll(a, -1, axis=0)
    ab = b - a
    len2 = (ab ** 2).sum(axis=1)
    len2[len2 == 0] = 1.0
    # (points, segments)
    t = ((p[:, None, :] - a[None]) * ab[None]).sum(axis=-1) / len2[None]
    q = a[None] + np.clip(t, 0.0, 1.0)[..., None] * ab[None]
    d = np.hypot(*(p[:, None, :] - q).transpose(2, 0, 1))
    best = d.argmin(axis=1)
    rows = np.arange(len(p))
    return q[rows, best], d[rows, best]


def clip_vertices_to(points: np.ndarray, container: np.ndarray) -> np.ndarray:
    """Move vertices lying outside `container` onto its boundary."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2).copy()
    c = np.asarray(container, dtype=np.float64).reshape(-1, 2)
    if len(p) == 0 or len(c) < 3:
        return p
    outside = ~points_in_poly(p, c)
    if outside.any():
        p[outside], _ = nearest_on_boundary(p[outside], c)
    return p
