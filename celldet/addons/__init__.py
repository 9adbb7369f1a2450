"""
Add-ons package for cell detection.

Provides helper functions for:
- polygon geometry in calibrated units
- shape measurements of detected nuclei and cells
- CSV export of object measurements
"""

# ---- Geometry helpers ----
from .geometry import (
    polygon_px_to_um,
    polygon_area,
    perimeter,
    caliper_diameters,
    ellipse_axes,
    convex_area,
    nearest_on_boundary,
    clip_vertices_to,
)

# ---- Shape measurements ----
from .metrics import SHAPE_FEATURES, shape_measurements

# ---- Export ----
from .csv_ext import measurement_columns, write_measurements_csv


__all__ = [
    # geometry
    "polygon_px_to_um", "polygon_area", "perimeter", "caliper_diameters", "ellipse_axes", "convex_area",
    "nearest_on_boundary", "clip_vertices_to",
    # metrics
    "SHAPE_FEATURES", "shape_measurements",
    # export
    "measurement_columns", "write_measurements_csv",
]
