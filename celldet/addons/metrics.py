"""
Shape measurements for nucleus and cell polygons.

Computes area, perimeter, circularity, min/max caliper,
eccentricity and solidity in calibrated units.
"""

from __future__ import annotations
import math
from typing import Dict
import numpy as np

from celldet.addons.geometry import (
    caliper_diameters,
    convex_area,
    ellipse_axes,
    perimeter,
    polygon_area,
    polygon_px_to_um,
)

SHAPE_FEATURES = ("Area", "Perimeter", "Circularity", "Max caliper", "Min caliper",
                  "Eccentricity", "Solidity")


def shape_measurements(points_px: np.ndarray, umx: float = 1.0, umy: float = 1.0,
                       prefix: str = "") -> Dict[str, float]:
    """
    Shape measurements of a full-resolution pixel polygon.

    Pass the pixel width/height in µm to get calibrated values, or
    leave them at 1 for pixel units.
    """
    keys = [prefix + k for k in SHAPE_FEATURES]
    pts = polygon_px_to_um(points_px, umx, umy)
    area = polygon_area(pts)
    if area <= 0:
        return {k: math.nan for k in keys}

    perim = perimeter(pts)
    circ = min(1.0, (4.0 * math.pi * area) / (perim * perim + 1e-12))
    cmin, cmax = caliper_diameters(pts)
    minor, major = ellipse_axes(pts)
    ecc = math.sqrt(max(0.0, 1.0 - (minor / major) ** 2)) if major > 0 else math.nan
    hull = convex_area(pts)
    solidity = min(1.0, area / hull) if hull > 0 else math.nan

    return dict(zip(keys, (area, perim, circ, cmax, cmin, ecc, solidity)))
