"""
Polygon regions of interest and their rasterization.

Polygon vertices are x/y coordinates on pixel edges: the unit square
[x, x+1) x [y, y+1) is pixel (x, y).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import cv2
import numpy as np
from skimage.draw import polygon2mask

from celldet.addons.geometry import polygon_area
from .errors import InvalidInputError


@dataclass(frozen=True, eq=False)
class PolygonROI:
    """Closed polygon in full-resolution image pixel coordinates on one plane."""
    points: np.ndarray
    z: int = 0
    t: int = 0

    def __post_init__(self) -> None:
        pts = np.asarray(self.points, dtype=np.float64).reshape(-1, 2)
        object.__setattr__(self, "points", pts)

    @classmethod
    def rectangle(cls, x: float, y: float, width: float, height: float, z: int = 0, t: int = 0) -> "PolygonROI":
        return cls(np.array([[x, y], [x + width, y], [x + width, y + height], [x, y + height]]), z, t)

    @property
    def area(self) -> float:
        return polygon_area(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) < 3 or not self.area > 0

    def bounds(self) -> Tuple[float, float, float, float]:
        """(x_min, y_min, x_max, y_max)."""
        if len(self.points) == 0:
            raise InvalidInputError("Empty ROI has no bounds")
        lo = self.points.min(axis=0)
        hi = self.points.max(axis=0)
        return float(lo[0]), float(lo[1]), float(hi[0]), float(hi[1])

    def contains_point(self, x: float, y: float, tolerance: float = 1e-6) -> bool:
        """True if (x, y) is inside or within `tolerance` of the boundary."""
        cnt = self.points.astype(np.float32).reshape(-1, 1, 2)
        return cv2.pointPolygonTest(cnt, (float(x), float(y)), True) >= -tolerance

    def contains(self, other: "PolygonROI", tolerance: float = 1e-3) -> bool:
        """True if every vertex of `other` lies within this polygon."""
        return all(self.contains_point(x, y, tolerance) for x, y in other.points)

    def to_region(self, origin: Tuple[float, float], downsample: float) -> np.ndarray:
        """Vertices in the pixel space of a region read at `origin` / `downsample`."""
        return (self.points - np.asarray(origin, dtype=np.float64)) / downsample

    def __len__(self) -> int:
        return len(self.points)


def region_to_image(points: np.ndarray, origin: Tuple[float, float], downsample: float) -> np.ndarray:
    """Map region pixel coordinates back to full-resolution image coordinates."""
    return np.asarray(points, dtype=np.float64) * downsample + np.asarray(origin, dtype=np.float64)


def make_roi_mask(shape: Tuple[int, int], polygon: Optional[Sequence] = None) -> np.ndarray:
    """
    Boolean mask of pixels whose centres fall inside `polygon`.

    `polygon` is an (N, 2) x/y array in region pixel coordinates; None
    selects the whole region.

    Raises:
        InvalidInputError: zero-sized region, degenerate polygon or empty mask.
    """
    h, w = shape
    if h <= 0 or w <= 0:
        raise InvalidInputError(f"Zero-sized region: {shape}")
    if polygon is None:
        return np.ones((h, w), bool)
    pts = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3 or not polygon_area(pts) > 0:
        raise InvalidInputError("ROI polygon needs at least 3 vertices and a positive area")
    # pixel-centre convention: (col + 0.5, row + 0.5)
    rc = np.column_stack([pts[:, 1] - 0.5, pts[:, 0] - 0.5])
    mask = polygon2mask((h, w), rc)
    if not mask.any():
        raise InvalidInputError("ROI does not cover any pixel of the region")
    return mask
