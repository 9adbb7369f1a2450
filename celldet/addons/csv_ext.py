"""
CSV export of detection measurements.

One row per detected object: index, kind, centroid of its polygon and
every measurement name seen across the objects (first-seen order).
"""

from __future__ import annotations
import csv
import math
from typing import List, Sequence

import numpy as np


def measurement_columns(objects: Sequence) -> List[str]:
    """Union of measurement names over `objects`, in first-seen order."""
    seen = {}
    for obj in objects:
        for name in obj.measurements:
            seen.setdefault(name, None)
    return list(seen)


def _centroid(points: np.ndarray):
    if len(points) == 0:
        return math.nan, math.nan
    c = np.asarray(points, dtype=np.float64).mean(axis=0)
    return float(c[0]), float(c[1])


def write_measurements_csv(path: str, objects: Sequence, unit: str = "px") -> None:
    """Write a UTF-8 CSV file with one row per detected object."""
    columns = measurement_columns(objects)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        # Header
        writer.writerow(["idx", "kind", f"centroid_x_{unit}", f"centroid_y_{unit}", *columns])
        # Data rows
        for i, obj in enumerate(objects, start=1):
            cx, cy = _centroid(obj.roi.points)
            row = [i, obj.kind, f"{cx:.3f}", f"{cy:.3f}"]
            for name in columns:
                v = obj.measurements.get(name, math.nan)
                row.append("" if math.isnan(v) else f"{v:.6g}")
            writer.writerow(row)
