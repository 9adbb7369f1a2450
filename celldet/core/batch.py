"""
Run detection over many ROIs on a thread pool.

Each ROI gets its own `CellDetector` from `detector_factory`, so no
segmenter state is shared between workers. A failure in one ROI is
logged and recorded on its result; the other ROIs carry on.
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from .params import DetectionParameters
from .pipeline import CancelCallback, CellDetector, DetectionResult
from .roi import PolygonROI

logger = logging.getLogger(__name__)


def _run_one(index: int, roi: PolygonROI, detector_factory: Callable[[], CellDetector],
             params: DetectionParameters, cancel: Optional[CancelCallback]) -> DetectionResult:
    if cancel is not None and cancel():
        return DetectionResult([], completed=False, description="Detection cancelled")
    try:
        return detector_factory().run_detection(roi, params, cancel=cancel)
    except Exception as e:
        logger.error("Detection failed for ROI %d: %s", index, e, exc_info=True)
        return DetectionResult([], completed=False, description="Detection failed", error=str(e))


def detect_batch(
    rois: Sequence[PolygonROI],
    detector_factory: Callable[[], CellDetector],
    params: DetectionParameters,
    max_workers: int = 1,
    cancel: Optional[CancelCallback] = None,
) -> List[DetectionResult]:
    """Detect in every ROI; results are returned in the order of `rois`."""
    rois = list(rois)
    if not rois:
        return []
    workers = max(1, min(int(max_workers), len(rois)))
    logger.debug("Detecting in %d ROIs with %d worker(s)", len(rois), workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_run_one, i, roi, detector_factory, params, cancel)
                   for i, roi in enumerate(rois)]
        return [f.result() for f in futures]
