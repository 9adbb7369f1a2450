"""
Channel extraction: split a pixel region into named float rasters.

Brightfield RGB regions with stain vectors are colour-deconvolved into
optical-density channels; any other region is split band by band.
One channel (or the optical density sum) is chosen for detection.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import numpy as np

from .errors import UnsupportedInputError

logger = logging.getLogger(__name__)

HEMATOXYLIN_OD = "Hematoxylin OD"
OPTICAL_DENSITY_SUM = "Optical density sum"


@dataclass(frozen=True)
class StainVector:
    """A named stain colour in optical-density space (stored unit length)."""
    name: str
    r: float
    g: float
    b: float
    residual: bool = False

    def __post_init__(self) -> None:
        n = float(np.sqrt(self.r ** 2 + self.g ** 2 + self.b ** 2))
        if n <= 0:
            raise UnsupportedInputError(f"Stain '{self.name}' has a zero vector")
        object.__setattr__(self, "r", self.r / n)
        object.__setattr__(self, "g", self.g / n)
        object.__setattr__(self, "b", self.b / n)

    def as_array(self) -> np.ndarray:
        return np.array([self.r, self.g, self.b], dtype=np.float64)


def residual_stain(s1: StainVector, s2: StainVector) -> StainVector:
    """Third stain orthogonal to the first two."""
    v = np.cross(s1.as_array(), s2.as_array())
    if np.linalg.norm(v) < 1e-12:
        raise UnsupportedInputError("Stain vectors 1 and 2 are parallel")
    return StainVector("Residual", float(v[0]), float(v[1]), float(v[2]), residual=True)


@dataclass(frozen=True)
class ColorDeconvolutionStains:
    """Up to three stain vectors plus the background (white) RGB values."""
    name: str
    stain1: StainVector
    stain2: StainVector
    stain3: Optional[StainVector] = None
    max_red: float = 255.0
    max_green: float = 255.0
    max_blue: float = 255.0

    def __post_init__(self) -> None:
        if self.stain3 is None:
            object.__setattr__(self, "stain3", residual_stain(self.stain1, self.stain2))

    def stains(self) -> List[StainVector]:
        return [self.stain1, self.stain2, self.stain3]

    @property
    def is_h_dab(self) -> bool:
        return is_hematoxylin(self.stain1) and self.stain2.name.strip().upper() == "DAB"

    def matrix(self) -> np.ndarray:
        return np.stack([s.as_array() for s in self.stains()])


def is_hematoxylin(stain: StainVector) -> bool:
    """Tolerant check for the usual spellings of hematoxylin."""
    name = stain.name.lower()
    return "hematoxylin" in name or "haematoxylin" in name


H_DAB = ColorDeconvolutionStains(
    "H-DAB",
    StainVector("Hematoxylin", 0.651, 0.701, 0.290),
    StainVector("DAB", 0.269, 0.568, 0.778),
)

H_E = ColorDeconvolutionStains(
    "H&E",
    StainVector("Hematoxylin", 0.651, 0.701, 0.290),
    StainVector("Eosin", 0.216, 0.801, 0.558),
)


def _optical_density(rgb: np.ndarray, stains: ColorDeconvolutionStains) -> np.ndarray:
    maxes = np.array([stains.max_red, stains.max_green, stains.max_blue], dtype=np.float64)
    px = np.maximum(rgb.astype(np.float64), 1.0)
    return -np.log10(px / maxes)


def color_deconvolve(rgb: np.ndarray, stains: ColorDeconvolutionStains) -> List[np.ndarray]:
    """Return one float32 concentration raster per stain (stain 1..3)."""
    od = _optical_density(rgb, stains)
    inv = np.linalg.inv(stains.matrix())
    conc = od @ inv
    return [conc[..., i].astype(np.float32) for i in range(3)]


def optical_density_sum(rgb: np.ndarray, stains: ColorDeconvolutionStains) -> np.ndarray:
    """Sum of red, green and blue optical densities."""
    return _optical_density(rgb, stains).sum(axis=-1).astype(np.float32)


@dataclass
class ChannelSet:
    """Named rasters for nucleus and cell measurement plus the detection raster."""
    detection: np.ndarray
    detection_name: str
    nucleus_channels: Dict[str, np.ndarray] = field(default_factory=dict)
    cell_channels: Dict[str, np.ndarray] = field(default_factory=dict)
    nuclear_name: Optional[str] = None
    membrane_name: Optional[str] = None
    brightfield: bool = False  # colour-deconvolved optical densities

    @property
    def shape(self) -> tuple:
        return self.detection.shape

    def membrane_pair(self):
        """(nuclear raster, membrane raster) when both are available, else None."""
        if self.nuclear_name is None or self.membrane_name is None:
            return None
        nuc = self.nucleus_channels.get(self.nuclear_name)
        mem = self.nucleus_channels.get(self.membrane_name)
        if nuc is None or mem is None:
            return None
        return nuc, mem


def _as_bands(image: np.ndarray) -> List[np.ndarray]:
    if image.ndim == 2:
        return [image]
    if image.ndim == 3:
        return [image[..., c] for c in range(image.shape[2])]
    raise UnsupportedInputError(f"Unsupported pixel layout with shape {image.shape}")


def _default_names(n: int) -> List[str]:
    if n == 3:
        return ["Red", "Green", "Blue"]
    return [f"Channel {i + 1}" for i in range(n)]


def _brightfield_channels(image: np.ndarray, stains: ColorDeconvolutionStains,
                          detection_channel: str) -> ChannelSet:
    if image.ndim != 3 or image.shape[2] != 3:
        raise UnsupportedInputError(
            f"Unsupported image for color deconvolution: shape {image.shape}")
    fps = color_deconvolve(image, stains)
    channels: Dict[str, np.ndarray] = {}
    for i, stain in enumerate(stains.stains()):
        if not stain.residual:
            channels[f"{stain.name} OD"] = fps[i]
    if not channels:
        raise UnsupportedInputError("No usable (non-residual) stain for detection")

    detection = None
    if detection_channel == OPTICAL_DENSITY_SUM:
        detection = optical_density_sum(image, stains)
    elif detection_channel == HEMATOXYLIN_OD:
        for i, stain in enumerate(stains.stains()):
            if is_hematoxylin(stain) and not stain.residual:
                detection = fps[i].copy()
                if i > 0:
                    logger.warning("Hematoxylin expected to be stain 1, but here it is stain %d", i + 1)
                break
        if detection is None:
            logger.warning("Hematoxylin stain not found! The first stain will be used by default (%s).",
                           stains.stain1.name)
    else:
        for i, stain in enumerate(stains.stains()):
            if detection_channel in (stain.name, f"{stain.name} OD") and not stain.residual:
                detection = fps[i].copy()
                logger.debug("Using stain %s for cell detection", stain.name)
        if detection is None:
            logger.warning("Unknown detection channel %s, the first stain will be used", detection_channel)
    if detection is None:
        if stains.stain1.residual:
            raise UnsupportedInputError("No valid detection channel is available")
        detection = fps[0].copy()
        detection_channel = f"{stains.stain1.name} OD"

    nuclear = membrane = None
    if stains.is_h_dab:
        nuclear, membrane = f"{stains.stain1.name} OD", f"{stains.stain2.name} OD"
    return ChannelSet(
        detection=detection,
        detection_name=detection_channel,
        nucleus_channels=dict(channels),
        cell_channels=dict(channels),
        nuclear_name=nuclear,
        membrane_name=membrane,
        brightfield=True,
    )


def extract_channels(
    image: np.ndarray,
    stains: Optional[ColorDeconvolutionStains] = None,
    detection_channel: Optional[str] = None,
    channel_names: Optional[Sequence[str]] = None,
    brightfield: Optional[bool] = None,
    nuclear_channel: Optional[str] = None,
    membrane_channel: Optional[str] = None,
) -> ChannelSet:
    """
    Split a region into named float32 channels and pick the detection channel.

    Args:
        image: (H, W) or (H, W, C) pixel region; brightfield needs (H, W, 3) RGB.
        stains: stain vectors; with `brightfield` they trigger colour deconvolution.
        detection_channel: channel used for segmentation. Brightfield accepts
            "Hematoxylin OD", "Optical density sum" or a stain name; otherwise a
            channel name (defaults to the first channel).
        channel_names: names of the bands for non-deconvolved images.
        brightfield: defaults to True when `stains` are given.
        nuclear_channel, membrane_channel: channel pair used for membrane
            exclusion on non-deconvolved images.

    Raises:
        UnsupportedInputError: no detection channel can be resolved or the
            band layout is unexpected.
    """
    image = np.asarray(image)
    if image.size == 0:
        raise UnsupportedInputError("Empty pixel region")
    if brightfield is None:
        brightfield = stains is not None

    if brightfield and stains is not None:
        return _brightfield_channels(image, stains, detection_channel or HEMATOXYLIN_OD)
    if brightfield:
        raise UnsupportedInputError("No valid detection channel is selected for a brightfield image without stains")

    bands = _as_bands(image)
    names = list(channel_names) if channel_names is not None else _default_names(len(bands))
    if len(names) != len(bands):
        raise UnsupportedInputError(f"Expected {len(bands)} channel names, got {len(names)}")

    channels: Dict[str, np.ndarray] = {}
    for name, band in zip(names, bands):
        if name in channels:
            logger.warning("Channel with duplicate name '%s' - will be skipped", name)
            continue
        channels[name] = band.astype(np.float32)

    if detection_channel is None:
        detection_channel = names[0]
    if detection_channel not in channels:
        raise UnsupportedInputError(f"Detection channel '{detection_channel}' not found in {list(channels)}")

    return ChannelSet(
        detection=channels[detection_channel].copy(),
        detection_name=detection_channel,
        nucleus_channels=dict(channels),
        cell_channels=dict(channels),
        nuclear_name=nuclear_channel,
        membrane_name=membrane_channel,
    )
