# Public API of the core package (re-export)
from .errors import (
    CellDetectionError,
    InvalidInputError,
    UnsupportedInputError,
    DetectionCancelled,
)
from .params import (
    DetectionParameters,
    MICRON_DEFAULTS,
    PixelCalibration,
    UNCALIBRATED,
    preferred_pixel_size_um,
    downsample_for,
)
from .channels import (
    HEMATOXYLIN_OD,
    OPTICAL_DENSITY_SUM,
    StainVector,
    ColorDeconvolutionStains,
    H_DAB,
    H_E,
    color_deconvolve,
    ChannelSet,
    extract_channels,
)
from .background import (
    BackgroundEstimate,
    estimate_background,
    subtract_background,
)
from .segment import (
    SegmenterState,
    NucleusSegmentation,
    NucleusSegmenter,
)
from .measure import (
    STATISTICS,
    RunningStatistics,
    compute_running_statistics,
    statistics_to_measurements,
)
from .expand import (
    CellExpansion,
    expand_cells,
    area_ratio,
)
from .roi import (
    PolygonROI,
    make_roi_mask,
)
from .assemble import (
    AREA_RATIO,
    DetectedObject,
    NucleusView,
    trace_label_polygon,
    smooth_polygon,
    simplify_polygon,
    assemble_objects,
)
from .io_utils import (
    RegionRequest,
    RegionSupplier,
    ArrayRegionSupplier,
    ImageFileRegionSupplier,
    dump_tiff_metadata_text,
    parse_pixel_size_from_text,
    calibration_from_metadata,
)
from .pipeline import (
    CancelToken,
    DebugStack,
    DetectionResult,
    describe,
    detect_objects,
    CellDetector,
)
from .batch import detect_batch

__all__ = [
    # errors
    "CellDetectionError", "InvalidInputError", "UnsupportedInputError", "DetectionCancelled",
    # parameters / calibration
    "DetectionParameters", "MICRON_DEFAULTS", "PixelCalibration", "UNCALIBRATED",
    "preferred_pixel_size_um", "downsample_for",
    # channels
    "HEMATOXYLIN_OD", "OPTICAL_DENSITY_SUM", "StainVector", "ColorDeconvolutionStains", "H_DAB", "H_E",
    "color_deconvolve", "ChannelSet", "extract_channels",
    # background
    "BackgroundEstimate", "estimate_background", "subtract_background",
    # nucleus segmentation
    "SegmenterState", "NucleusSegmentation", "NucleusSegmenter",
    # measurement
    "STATISTICS", "RunningStatistics", "compute_running_statistics", "statistics_to_measurements",
    # cell expansion
    "CellExpansion", "expand_cells", "area_ratio",
    # ROI / objects
    "PolygonROI", "make_roi_mask", "AREA_RATIO", "DetectedObject", "NucleusView",
    "trace_label_polygon", "smooth_polygon", "simplify_polygon", "assemble_objects",
    # region io / metadata
    "RegionRequest", "RegionSupplier", "ArrayRegionSupplier", "ImageFileRegionSupplier",
    "dump_tiff_metadata_text", "parse_pixel_size_from_text", "calibration_from_metadata",
    # pipeline
    "CancelToken", "DebugStack", "DetectionResult", "describe", "detect_objects", "CellDetector",
    "detect_batch",
]
