"""
Region I/O and metadata utilities.

Provides region suppliers (in-memory arrays and image files) and
extraction of pixel calibration (µm/px) from TIFF metadata.
"""

from __future__ import annotations
import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple
import cv2
import numpy as np
from PIL import Image

from .errors import InvalidInputError
from .params import PixelCalibration, UNCALIBRATED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionRequest:
    """Full-resolution bounding box of a region plus the downsample it is read at."""
    path: str
    downsample: float
    x: int
    y: int
    width: int
    height: int
    z: int = 0
    t: int = 0

    @classmethod
    def for_bounds(cls, path: str, downsample: float, bounds: Tuple[float, float, float, float],
                   image_size: Optional[Tuple[int, int]] = None, z: int = 0, t: int = 0) -> "RegionRequest":
        """Integer request covering `bounds` (x0, y0, x1, y1), clipped to `image_size` (w, h)."""
        x0, y0, x1, y1 = bounds
        x = int(math.floor(x0))
        y = int(math.floor(y0))
        x2 = int(math.ceil(x1))
        y2 = int(math.ceil(y1))
        if image_size is not None:
            w, h = image_size
            x, y = max(0, x), max(0, y)
            x2, y2 = min(w, x2), min(h, y2)
        if x2 <= x or y2 <= y:
            raise InvalidInputError(f"Region request for {bounds} is empty")
        return cls(path, float(downsample), x, y, x2 - x, y2 - y, z, t)

    @property
    def origin(self) -> Tuple[float, float]:
        return float(self.x), float(self.y)

    @property
    def output_shape(self) -> Tuple[int, int]:
        """(rows, cols) of the region once downsampled."""
        return (max(1, int(round(self.height / self.downsample))),
                max(1, int(round(self.width / self.downsample))))


class RegionSupplier(Protocol):
    def read_region(self, path: str, downsample: float, x: int, y: int,
                    width: int, height: int, z: int = 0, t: int = 0) -> np.ndarray:
        ...


def _resize_region(region: np.ndarray, request: RegionRequest) -> np.ndarray:
    if request.downsample == 1.0:
        return np.ascontiguousarray(region)
    rows, cols = request.output_shape
    if region.ndim == 3 and region.shape[2] > 4:
        # cv2.resize handles at most 4 channels at a time
        bands = [cv2.resize(np.ascontiguousarray(region[..., i]), (cols, rows), interpolation=cv2.INTER_AREA)
                 for i in range(region.shape[2])]
        return np.stack(bands, axis=-1)
    return cv2.resize(np.ascontiguousarray(region), (cols, rows), interpolation=cv2.INTER_AREA)


def _read_plane(full: np.ndarray, request: RegionRequest) -> np.ndarray:
    if request.z != 0 or request.t != 0:
        raise InvalidInputError(f"Only z=0, t=0 is available, requested z={request.z}, t={request.t}")
    h, w = full.shape[:2]
    if request.x < 0 or request.y < 0 or request.x + request.width > w or request.y + request.height > h:
        raise InvalidInputError(
            f"Region ({request.x}, {request.y}, {request.width}, {request.height}) is outside the {w}x{h} image")
    region = full[request.y:request.y + request.height, request.x:request.x + request.width]
    return _resize_region(region, request)


class ArrayRegionSupplier:
    """Serve regions of in-memory images keyed by path."""

    def __init__(self, images: Optional[Dict[str, np.ndarray]] = None) -> None:
        self.images: Dict[str, np.ndarray] = dict(images or {})

    def add(self, path: str, image: np.ndarray) -> None:
        self.images[path] = np.asarray(image)

    def image_size(self, path: str) -> Tuple[int, int]:
        h, w = self._get(path).shape[:2]
        return w, h

    def _get(self, path: str) -> np.ndarray:
        try:
            return self.images[path]
        except KeyError:
            raise InvalidInputError(f"Unknown image: {path}") from None

    def read_region(self, path: str, downsample: float, x: int, y: int,
                    width: int, height: int, z: int = 0, t: int = 0) -> np.ndarray:
        request = RegionRequest(path, downsample, x, y, width, height, z, t)
        return _read_plane(self._get(path), request)


def imread_rgb(path: str) -> np.ndarray:
    """Read an image keeping its bit depth; color images come back in RGB order."""
    img = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if img is None:
        # Fallback: use Pillow if OpenCV fails
        try:
            pil = Image.open(path)
        except OSError as e:
            raise InvalidInputError(f"Cannot read image {path}: {e}") from e
        if pil.mode not in ("L", "I;16", "I;16B", "I;16L", "RGB", "F"):
            pil = pil.convert("RGB")
        return np.array(pil)

    if img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2RGB)
    elif img.ndim == 3 and img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    return img


class ImageFileRegionSupplier:
    """
    Read regions from single-plane image files.

    Decoded images are kept for the lifetime of the supplier; regions are
    cropped and area-downsampled on request.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, np.ndarray] = {}

    def _get(self, path: str) -> np.ndarray:
        img = self._cache.get(path)
        if img is None:
            img = imread_rgb(path)
            self._cache[path] = img
            logger.debug("Loaded %s with shape %s", path, img.shape)
        return img

    def image_size(self, path: str) -> Tuple[int, int]:
        h, w = self._get(path).shape[:2]
        return w, h

    def read_region(self, path: str, downsample: float, x: int, y: int,
                    width: int, height: int, z: int = 0, t: int = 0) -> np.ndarray:
        request = RegionRequest(path, downsample, x, y, width, height, z, t)
        return _read_plane(self._get(path), request)


def dump_tiff_metadata_text(image_path: str) -> str:
    """Return TIFF metadata as concatenated text for regex parsing."""
    try:
        pil = Image.open(image_path)
    except OSError as e:
        logger.warning("Cannot open %s for metadata: %s", image_path, e)
        return ""

    out = []
    # Read TIFF tags
    for tag, val in getattr(pil, "tag_v2", {}).items():
        if isinstance(val, bytes):
            s = val.decode(errors="ignore")
        elif isinstance(val, (list, tuple)):
            s = " ".join([v.decode(errors="ignore") if isinstance(v, bytes) else str(v) for v in val])
        else:
            s = str(val)
        out.append(f"[{tag}] {s}")

    # Include general info fields
    for k, v in (pil.info or {}).items():
        if isinstance(v, bytes):
            v = v.decode(errors="ignore")
        out.append(f"[{k}] {v}")

    return "\n".join(out)


_NUMBER = r"([0-9]*\.?[0-9]+(?:[eE][\-\+]?[0-9]+)?)"
_OME_UNITS = {"µm": 1.0, "um": 1.0, "nm": 1e-3, "mm": 1e3, "m": 1e6}


def _positive(s: str) -> Optional[float]:
    v = float(s)
    return v if v > 0 and math.isfinite(v) else None


def parse_pixel_size_from_text(txt: str) -> PixelCalibration:
    """
    Extract the pixel width/height in µm from metadata text.

    Recognizes Aperio `MPP = x`, OME `PhysicalSizeX/Y` (with optional
    units) and ImageJ `unit=micron` combined with the TIFF resolution tags.
    """
    if not txt:
        return UNCALIBRATED

    # Aperio SVS description
    m = re.search(r"\bMPP\s*=\s*" + _NUMBER, txt)
    if m and _positive(m.group(1)):
        mpp = float(m.group(1))
        return PixelCalibration(mpp, mpp)

    # OME-XML
    mx = re.search(r'PhysicalSizeX="' + _NUMBER + '"', txt)
    my = re.search(r'PhysicalSizeY="' + _NUMBER + '"', txt)
    if mx and _positive(mx.group(1)):
        ux = re.search(r'PhysicalSizeXUnit="([^"]+)"', txt)
        uy = re.search(r'PhysicalSizeYUnit="([^"]+)"', txt)
        fx = _OME_UNITS.get(ux.group(1) if ux else "µm")
        fy = _OME_UNITS.get(uy.group(1) if uy else "µm")
        if fx is not None:
            px = float(mx.group(1)) * fx
            py = float(my.group(1)) * fy if (my and fy is not None and _positive(my.group(1))) else px
            return PixelCalibration(px, py)

    # ImageJ description + resolution tags (282/283: pixels per unit)
    if re.search(r"unit\s*=\s*(micron|um|µm|\\u00B5m)", txt):
        rx = re.search(r"\[282\]\s*" + _NUMBER, txt)
        ry = re.search(r"\[283\]\s*" + _NUMBER, txt)
        if rx and _positive(rx.group(1)):
            px = 1.0 / float(rx.group(1))
            py = 1.0 / float(ry.group(1)) if (ry and _positive(ry.group(1))) else px
            return PixelCalibration(px, py)

    return UNCALIBRATED


def calibration_from_metadata(image_path: str) -> PixelCalibration:
    """Read a TIFF file and return the pixel calibration parsed from its metadata."""
    return parse_pixel_size_from_text(dump_tiff_metadata_text(image_path))
