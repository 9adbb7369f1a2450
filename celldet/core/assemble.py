"""
Turn labelled regions into nucleus / cell objects.

- Trace the pixel-edge boundary of each label
- Optional smoothing, re-densification and simplification
- Map to full-resolution image coordinates
- Attach shape and intensity measurements per compartment
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple
import cv2
import numpy as np
from scipy import ndimage
from skimage.measure import find_contours

from celldet.addons import shape_measurements
from celldet.addons.geometry import clip_vertices_to, polygon_area
from .channels import ChannelSet
from .expand import CellExpansion, area_ratio, measure_compartments
from .measure import measure_channels, statistics_to_measurements
from .params import DetectionParameters, PixelCalibration, UNCALIBRATED
from .roi import PolygonROI, region_to_image
from .segment import NucleusSegmentation

logger = logging.getLogger(__name__)

AREA_RATIO = "Nucleus/Cell area ratio"


@dataclass(frozen=True)
class NucleusView:
    """Read-only projection of the nucleus paired with a cell."""
    roi: PolygonROI
    measurements: Mapping[str, float]


@dataclass(eq=False)
class DetectedObject:
    """
    A detected nucleus or cell.

    For cells built with `include_nuclei`, the nucleus geometry is attached
    as `nucleus_roi` and shares this object's measurement map.
    """
    roi: PolygonROI
    measurements: Dict[str, float]
    nucleus_roi: Optional[PolygonROI] = None
    kind: str = "nucleus"

    @property
    def is_cell(self) -> bool:
        return self.kind == "cell"

    @property
    def nucleus(self) -> Optional[NucleusView]:
        if not self.is_cell:
            return NucleusView(self.roi, MappingProxyType(self.measurements))
        if self.nucleus_roi is None:
            return None
        return NucleusView(self.nucleus_roi, MappingProxyType(self.measurements))

    def __repr__(self) -> str:
        return f"DetectedObject(kind={self.kind!r}, area={self.roi.area:.1f}, n_measurements={len(self.measurements)})"


def trace_label_polygon(labels: np.ndarray, label: int,
                        bbox: Optional[Tuple[slice, slice]] = None) -> Optional[np.ndarray]:
    """
    Outer boundary of `label` as an (N, 2) x/y polygon on pixel edges.

    Returns the largest contour if the label has several pieces, or None
    if it has no pixels.
    """
    if bbox is None:
        found = ndimage.find_objects((labels == label).astype(np.int32))
        if not found or found[0] is None:
            return None
        bbox = found[0]
    rs, cs = bbox
    sub = labels[rs, cs] == label
    if not sub.any():
        return None
    padded = np.pad(sub, 1).astype(np.float32)
    contours = find_contours(padded, 0.5)
    if not contours:
        return None
    best = max(contours, key=lambda c: polygon_area(c[:, ::-1]))
    if len(best) > 1 and np.allclose(best[0], best[-1]):
        best = best[:-1]
    # (row, col) on the padded crop -> x/y on pixel edges
    x = best[:, 1] - 1 + 0.5 + cs.start
    y = best[:, 0] - 1 + 0.5 + rs.start
    return np.column_stack([x, y])


def interpolate_polygon(points: np.ndarray, interval: float) -> np.ndarray:
    """Resample a closed polygon with vertices every `interval` along its boundary."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if interval <= 0 or len(p) < 3:
        return p
    closed = np.vstack([p, p[:1]])
    seg = np.hypot(*np.diff(closed, axis=0).T)
    cum = np.concatenate([[0.0], np.cumsum(seg)])
    total = cum[-1]
    if total <= 0:
        return p
    s = np.arange(0.0, total, interval)
    return np.column_stack([np.interp(s, cum, closed[:, 0]), np.interp(s, cum, closed[:, 1])])


def smooth_polygon(points: np.ndarray) -> np.ndarray:
    """Average every second vertex with its two neighbours."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    n = len(p)
    if n < 3:
        return p
    idx = np.arange(0, n, 2)
    return (p[(idx - 1) % n] + p[idx] + p[(idx + 1) % n]) / 3.0


def simplify_polygon(points: np.ndarray, max_deviation: float) -> np.ndarray:
    """Douglas-Peucker simplification bounded by `max_deviation`."""
    p = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(p) < 4 or max_deviation <= 0:
        return p
    approx = cv2.approxPolyDP(p.astype(np.float32).reshape(-1, 1, 2), float(max_deviation), True)
    return approx.reshape(-1, 2).astype(np.float64)


def polygon_to_roi(points: np.ndarray, smooth: bool, origin: Tuple[float, float],
                   downsample: float, z: int = 0, t: int = 0) -> PolygonROI:
    """Optional smoothing in region space, then conversion to image coordinates."""
    p = points
    if smooth:
        p = interpolate_polygon(p, 1.0)
        p = smooth_polygon(p)
        p = interpolate_polygon(p, min(2.0, len(p) * 0.1))
    p = region_to_image(p, origin, downsample)
    if smooth:
        p = simplify_polygon(p, math.sqrt(downsample) / 2.0)
    return PolygonROI(p, z, t)


def _pixel_sizes(calibration: PixelCalibration) -> Tuple[float, float]:
    if calibration.has_pixel_size_microns:
        return calibration.pixel_width_um, calibration.pixel_height_um
    return 1.0, 1.0


def assemble_objects(
    nuclei: NucleusSegmentation,
    channels: ChannelSet,
    params: DetectionParameters,
    expansion: Optional[CellExpansion] = None,
    calibration: PixelCalibration = UNCALIBRATED,
    origin: Tuple[float, float] = (0.0, 0.0),
    downsample: float = 1.0,
) -> List[DetectedObject]:
    """
    Build the final objects for the kept nucleus labels.

    Args:
        nuclei: filtered nucleus labels.
        channels: rasters measured for nuclei and cells.
        params: detection parameters (smoothing, measurements, include_nuclei).
        expansion: cell labels, or None to return nuclei only.
        calibration: full-resolution pixel calibration.
        origin, downsample: where the processed region sits in the full image.
    """
    umx, umy = _pixel_sizes(calibration)
    z, t = params.z, params.t
    measure = params.make_measurements

    nucleus_stats = measure_channels(channels.nucleus_channels, nuclei.labels, nuclei.n_labels) if measure else {}
    boxes = ndimage.find_objects(nuclei.labels, max_label=nuclei.n_labels)

    nuclei_objects: Dict[int, DetectedObject] = {}
    for lab in nuclei.active_labels:
        pts = trace_label_polygon(nuclei.labels, lab, boxes[lab - 1])
        if pts is None:
            continue
        roi = polygon_to_roi(pts, params.smooth_boundaries, origin, downsample, z, t)
        ml: Dict[str, float] = {}
        if measure:
            ml.update(shape_measurements(roi.points, umx, umy, "Nucleus: "))
            for name, stats in nucleus_stats.items():
                ml.update(statistics_to_measurements("Nucleus: ", name, stats[lab - 1]))
        nuclei_objects[lab] = DetectedObject(roi, ml, kind="nucleus")

    if expansion is None:
        objects = list(nuclei_objects.values())
    else:
        objects = []
        comp = measure_compartments(expansion, channels.cell_channels, nuclei.n_labels) if measure else {}
        cell_boxes = ndimage.find_objects(expansion.cell_labels, max_label=nuclei.n_labels)
        for lab, nucleus in nuclei_objects.items():
            pts = None
            if cell_boxes[lab - 1] is not None:
                pts = trace_label_polygon(expansion.cell_labels, lab, cell_boxes[lab - 1])
            if pts is None:
                logger.debug("Nucleus %d has no cell pixels - skipped", lab)
                continue
            roi = polygon_to_roi(pts, params.smooth_boundaries, origin, downsample, z, t)
            if params.include_nuclei:
                ml = nucleus.measurements
                nucleus_roi = nucleus.roi
                # Smoothing both outlines separately can push the nucleus past the cell
                inside = clip_vertices_to(nucleus_roi.points, roi.points)
                if not np.array_equal(inside, nucleus_roi.points):
                    nucleus_roi = PolygonROI(inside, z, t)
                    if measure:
                        ml.update(shape_measurements(inside, umx, umy, "Nucleus: "))
            else:
                ml = {}
                nucleus_roi = None
            if measure:
                ml.update(shape_measurements(roi.points, umx, umy, "Cell: "))
                for compartment in ("Cell", "Cytoplasm"):
                    for name, stats in comp[compartment].items():
                        ml.update(statistics_to_measurements(f"{compartment}: ", name, stats[lab - 1]))
                if nucleus_roi is not None and not nucleus_roi.is_empty:
                    ml[AREA_RATIO] = area_ratio(nucleus_roi.area, roi.area)
            objects.append(DetectedObject(roi, ml, nucleus_roi, kind="cell"))

    # smoothing can collapse very small or thin regions
    n_before = len(objects)
    objects = [o for o in objects
               if not o.roi.is_empty and not (o.nucleus_roi is not None and o.nucleus_roi.is_empty)]
    if len(objects) != n_before:
        logger.debug("Filtered out %d invalid objects (empty ROIs)", n_before - len(objects))
    return objects
