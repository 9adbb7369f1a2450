"""
End-to-end detection: channels -> nuclei -> cells -> objects.

- `detect_objects` runs the whole pipeline on an in-memory region
- `CellDetector` reads the region around a full-resolution ROI from a
  region supplier and keeps one segmenter per ROI so that parameter
  tweaks reuse the cached seeds
- Cancellation is cooperative: pass a `CancelToken` (or any zero-argument
  callable returning bool); a cancelled run yields an incomplete result
  with no objects
"""

from __future__ import annotations
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union
import numpy as np

from .assemble import DetectedObject, assemble_objects
from .channels import ColorDeconvolutionStains, extract_channels
from .errors import DetectionCancelled, InvalidInputError
from .expand import expand_cells
from .io_utils import RegionRequest, RegionSupplier
from .params import (
    DetectionParameters,
    PixelCalibration,
    UNCALIBRATED,
    downsample_for,
    preferred_pixel_size_um,
)
from .roi import PolygonROI, make_roi_mask
from .segment import DebugSink, NucleusSegmenter, validate_roi_mask

logger = logging.getLogger(__name__)

CancelCallback = Callable[[], bool]
RoiLike = Union[PolygonROI, np.ndarray, None]


class CancelToken:
    """Thread-safe cancellation flag; calling the token returns whether it is set."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DetectionCancelled("Detection cancelled")


class DebugStack:
    """Collect named intermediate rasters in the order they are produced."""

    def __init__(self) -> None:
        self.snapshots: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def __call__(self, name: str, raster: np.ndarray) -> None:
        self.snapshots[name] = np.array(raster, copy=True)

    def names(self) -> List[str]:
        return list(self.snapshots)

    def __getitem__(self, name: str) -> np.ndarray:
        return self.snapshots[name]

    def __contains__(self, name: object) -> bool:
        return name in self.snapshots

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshots)

    def __len__(self) -> int:
        return len(self.snapshots)


@dataclass
class DetectionResult:
    objects: List[DetectedObject] = field(default_factory=list)
    completed: bool = True
    description: str = ""
    error: Optional[str] = None

    def __len__(self) -> int:
        return len(self.objects)


def describe(objects: Sequence[DetectedObject]) -> str:
    n = len(objects)
    return "1 nucleus detected" if n == 1 else f"{n} nuclei detected"


def _check(cancel: Optional[CancelCallback]) -> None:
    if cancel is not None and cancel():
        raise DetectionCancelled("Detection cancelled")


def _cancelled_result() -> DetectionResult:
    return DetectionResult([], completed=False, description="Detection cancelled")


def _region_mask(shape: Tuple[int, int], roi: RoiLike, origin: Tuple[float, float],
                 downsample: float) -> np.ndarray:
    if roi is None:
        return make_roi_mask(shape)
    if isinstance(roi, PolygonROI):
        return make_roi_mask(shape, roi.to_region(origin, downsample))
    roi = np.asarray(roi)
    if roi.dtype == bool and roi.ndim == 2:
        return validate_roi_mask(roi, shape)
    # (N, 2) polygon already in region pixel coordinates
    return make_roi_mask(shape, roi)


def detect_objects(
    image: np.ndarray,
    params: DetectionParameters,
    roi: RoiLike = None,
    stains: Optional[ColorDeconvolutionStains] = None,
    detection_channel: Optional[str] = None,
    channel_names: Optional[Sequence[str]] = None,
    brightfield: Optional[bool] = None,
    calibration: Optional[PixelCalibration] = None,
    origin: Tuple[float, float] = (0.0, 0.0),
    downsample: float = 1.0,
    cancel: Optional[CancelCallback] = None,
    debug: Optional[DebugSink] = None,
    segmenter: Optional[NucleusSegmenter] = None,
    nuclear_channel: Optional[str] = None,
    membrane_channel: Optional[str] = None,
) -> DetectionResult:
    """
    Detect nuclei (and optionally cells) in one region.

    Args:
        image: region pixels, (H, W) or (H, W, C).
        params: detection parameters in pixels of `image`.
        roi: full-resolution `PolygonROI`, boolean mask of `image`'s shape,
            (N, 2) region-space polygon, or None for the whole region.
        calibration: full-resolution pixel calibration, used for measurements.
        origin, downsample: placement of `image` in the full-resolution image.
        cancel: polled between phases.
        debug: receives named intermediate rasters.
        segmenter: reuse a segmenter (and its seed cache) across calls.

    Raises:
        InvalidInputError: empty ROI or zero-sized region.
        UnsupportedInputError: detection channel cannot be resolved.
    """
    if downsample <= 0:
        raise InvalidInputError(f"Invalid downsample: {downsample}")
    calibration = calibration or UNCALIBRATED
    segmenter = segmenter or NucleusSegmenter()

    channels = extract_channels(
        image,
        stains=stains,
        detection_channel=detection_channel,
        channel_names=channel_names,
        brightfield=brightfield,
        nuclear_channel=nuclear_channel,
        membrane_channel=membrane_channel,
    )
    roi_mask = _region_mask(channels.shape, roi, origin, downsample)

    try:
        _check(cancel)
        nuclei = segmenter.segment(channels, roi_mask, params, cancel_cb=cancel, debug=debug)
        if nuclei is None:
            return _cancelled_result()
        expansion = expand_cells(nuclei, params.cell_expansion)
        if expansion is not None and debug is not None:
            debug("Cell labels", expansion.cell_labels.astype(np.float32))
        _check(cancel)
        objects = assemble_objects(nuclei, channels, params, expansion, calibration, origin, downsample)
        _check(cancel)
    except DetectionCancelled:
        logger.debug("Detection cancelled")
        return _cancelled_result()

    description = describe(objects)
    logger.debug(description)
    return DetectionResult(objects, completed=True, description=description)


class CellDetector:
    """
    Detect cells inside full-resolution ROIs of one image.

    Parameters passed to `run_detection` are in µm / µm² when the image is
    calibrated and in full-resolution pixels otherwise. Detection runs at
    `requested_pixel_size_um` (negative values: a multiple of the native
    pixel size). One detector holds one segmenter and is meant for one ROI
    at a time.
    """

    def __init__(
        self,
        supplier: RegionSupplier,
        path: str,
        calibration: PixelCalibration = UNCALIBRATED,
        stains: Optional[ColorDeconvolutionStains] = None,
        channel_names: Optional[Sequence[str]] = None,
        brightfield: Optional[bool] = None,
        detection_channel: Optional[str] = None,
        requested_pixel_size_um: float = 0.5,
        nuclear_channel: Optional[str] = None,
        membrane_channel: Optional[str] = None,
    ) -> None:
        self.supplier = supplier
        self.path = path
        self.calibration = calibration
        self.stains = stains
        self.channel_names = channel_names
        self.brightfield = brightfield
        self.detection_channel = detection_channel
        self.requested_pixel_size_um = requested_pixel_size_um
        self.nuclear_channel = nuclear_channel
        self.membrane_channel = membrane_channel
        self.segmenter = NucleusSegmenter()
        self.last_results_description: Optional[str] = None
        self._last_roi: Optional[bytes] = None

    def processing_scale(self, params: DetectionParameters) -> Tuple[float, DetectionParameters]:
        """(downsample, params in processing pixels) for `params` as given by the caller."""
        if not self.calibration.has_pixel_size_microns:
            return 1.0, params
        preferred = preferred_pixel_size_um(self.calibration, self.requested_pixel_size_um)
        downsample = downsample_for(self.calibration, preferred)
        return downsample, params.in_pixels(self.calibration.averaged_pixel_size_um * downsample)

    def run_detection(self, roi: PolygonROI, params: DetectionParameters,
                      cancel: Optional[CancelCallback] = None,
                      debug: Optional[DebugSink] = None) -> DetectionResult:
        if roi is None or roi.is_empty:
            raise InvalidInputError("Detection needs a non-empty ROI")
        downsample, px_params = self.processing_scale(params)

        image_size = None
        if hasattr(self.supplier, "image_size"):
            image_size = self.supplier.image_size(self.path)
        request = RegionRequest.for_bounds(self.path, downsample, roi.bounds(), image_size, params.z, params.t)

        roi_key = roi.points.tobytes() + repr(request).encode()
        if roi_key != self._last_roi:
            self.segmenter.invalidate()
            self._last_roi = roi_key

        pixels = self.supplier.read_region(request.path, request.downsample, request.x, request.y,
                                           request.width, request.height, request.z, request.t)
        logger.debug("Read region %s -> %s", request, pixels.shape)

        result = detect_objects(
            pixels,
            px_params,
            roi=roi,
            stains=self.stains,
            detection_channel=self.detection_channel,
            channel_names=self.channel_names,
            brightfield=self.brightfield,
            calibration=self.calibration,
            origin=request.origin,
            downsample=request.downsample,
            cancel=cancel,
            debug=debug,
            segmenter=self.segmenter,
            nuclear_channel=self.nuclear_channel,
            membrane_channel=self.membrane_channel,
        )
        self.last_results_description = result.description
        return result
