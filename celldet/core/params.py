"""
Detection parameters and pixel calibration.

All spatial fields of `DetectionParameters` are in pixels at the
processing resolution; `in_pixels` converts a parameter set written
in µm using the pixel size of that resolution.
"""

from __future__ import annotations
import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from .errors import InvalidInputError


@dataclass(frozen=True)
class DetectionParameters:
    """Configuration for nucleus detection and cell expansion."""

    # Nucleus
    median_radius: float = 0.0
    background_radius: float = 15.0
    max_background: float = 2.0
    background_by_reconstruction: bool = True
    sigma: float = 3.0
    min_area: float = 10.0
    max_area: float = 1000.0

    # Intensity
    threshold: float = 0.1
    watershed_post_process: bool = True
    exclude_membrane_channel: bool = False

    # Cell
    cell_expansion: float = 5.0
    include_nuclei: bool = True

    # General
    smooth_boundaries: bool = True
    make_measurements: bool = True

    # Plane
    z: int = 0
    t: int = 0

    def __post_init__(self) -> None:
        for name in ("median_radius", "sigma", "min_area", "max_area", "cell_expansion"):
            value = getattr(self, name)
            if math.isnan(value) or value < 0:
                raise InvalidInputError(f"'{name}' must be >= 0, got {value}")
        if math.isnan(self.background_radius):
            raise InvalidInputError("'background_radius' must be a number")
        if math.isnan(self.threshold):
            raise InvalidInputError("'threshold' must be a number")
        if self.z < 0 or self.t < 0:
            raise InvalidInputError("Plane indices must be >= 0")

    def seed_fingerprint(self) -> Tuple:
        """Values that change the oversegmented seed partition."""
        max_background = self.max_background if self.max_background > 0 else 0.0  # nan -> 0
        return (
            float(self.median_radius),
            float(self.background_radius),
            float(max_background),
            bool(self.background_by_reconstruction),
            float(self.sigma),
            bool(self.exclude_membrane_channel),
            int(self.z),
            int(self.t),
        )

    def in_pixels(self, pixel_size_um: float) -> "DetectionParameters":
        """Convert a parameter set expressed in µm / µm² to pixel units."""
        if not pixel_size_um or not math.isfinite(pixel_size_um) or pixel_size_um <= 0:
            raise InvalidInputError(f"Invalid pixel size: {pixel_size_um}")
        px2 = pixel_size_um * pixel_size_um
        return replace(
            self,
            median_radius=self.median_radius / pixel_size_um,
            background_radius=self.background_radius / pixel_size_um,
            sigma=self.sigma / pixel_size_um,
            min_area=self.min_area / px2,
            max_area=self.max_area / px2,
            cell_expansion=self.cell_expansion / pixel_size_um,
        )


# Defaults used when the image has a known pixel size (µm, µm²)
MICRON_DEFAULTS = DetectionParameters(
    background_radius=8.0,
    sigma=1.5,
    min_area=10.0,
    max_area=400.0,
    cell_expansion=5.0,
)


@dataclass(frozen=True)
class PixelCalibration:
    """Physical pixel size in µm; `None` means uncalibrated."""

    pixel_width_um: Optional[float] = None
    pixel_height_um: Optional[float] = None

    @property
    def has_pixel_size_microns(self) -> bool:
        w, h = self.pixel_width_um, self.pixel_height_um
        return bool(w and h and w > 0 and h > 0 and math.isfinite(w) and math.isfinite(h))

    @property
    def averaged_pixel_size_um(self) -> float:
        if not self.has_pixel_size_microns:
            return float("nan")
        return (self.pixel_width_um + self.pixel_height_um) / 2.0

    def scaled(self, downsample: float) -> "PixelCalibration":
        """Calibration of an image downsampled by `downsample`."""
        if not self.has_pixel_size_microns:
            return self
        return PixelCalibration(self.pixel_width_um * downsample, self.pixel_height_um * downsample)

    @property
    def unit(self) -> str:
        return "µm" if self.has_pixel_size_microns else "px"


UNCALIBRATED = PixelCalibration()


def preferred_pixel_size_um(calibration: PixelCalibration, requested_um: float) -> float:
    """
    Resolve the pixel size detection runs at.

    Negative values request a multiple of the native size; the result
    never goes below the native size. `nan` when uncalibrated.
    """
    if not calibration.has_pixel_size_microns:
        return float("nan")
    native = calibration.averaged_pixel_size_um
    if requested_um < 0:
        requested_um = native * -requested_um
    return max(requested_um, native)


def downsample_for(calibration: PixelCalibration, preferred_um: float) -> float:
    """Downsample factor that brings the native pixel size to `preferred_um`."""
    if not calibration.has_pixel_size_microns or not math.isfinite(preferred_um):
        return 1.0
    return max(1.0, preferred_um / calibration.averaged_pixel_size_um)
