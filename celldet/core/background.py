"""
Background estimation by grayscale morphological opening.

The erosion seeds the estimate; it is then grown back either by
reconstruction under the input image (opening by reconstruction)
or by a plain max filter (simple opening, local but less accurate).
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
from skimage.morphology import reconstruction

from .morphology import rank_max, rank_min

logger = logging.getLogger(__name__)


@dataclass
class BackgroundEstimate:
    """Background raster plus the optional high-background exclusion mask."""
    background: np.ndarray
    exclusion_mask: Optional[np.ndarray] = None


def estimate_background(
    img: np.ndarray,
    radius: float,
    max_background: float = float("nan"),
    by_reconstruction: bool = True,
) -> BackgroundEstimate:
    """
    Estimate a smooth background of `img` that never exceeds the image.

    Args:
        img: float32 detection raster.
        radius: erosion radius in pixels (> 0).
        max_background: if > 0, pixels whose eroded background exceeds it,
            plus everything within 2 x radius, are excluded and their
            background is set to +inf.
        by_reconstruction: opening by reconstruction (True) or simple opening.
    """
    img = img.astype(np.float32, copy=False)
    if by_reconstruction:
        logger.debug("Estimating background using opening by reconstruction")
    else:
        logger.debug("Estimating background using simple opening")

    seed = rank_min(img, radius)

    mask = None
    if not math.isnan(max_background) and max_background > 0:
        high = seed > max_background
        if high.any():
            # Grown by twice the erosion radius, not once
            mask = rank_max(high.astype(np.uint8), radius * 2).astype(bool)

    if by_reconstruction:
        # seed <= img holds after erosion
        background = reconstruction(np.minimum(seed, img), img, method="dilation").astype(np.float32)
    else:
        background = rank_max(seed, radius)

    if mask is not None:
        background[mask] = np.inf
    return BackgroundEstimate(background, mask)


def subtract_background(
    img: np.ndarray,
    radius: float,
    max_background: float = float("nan"),
    by_reconstruction: bool = True,
) -> Tuple[np.ndarray, BackgroundEstimate]:
    """
    Return (img - background, estimate).

    `radius <= 0` skips the step: the raster is returned unchanged with a
    zero background. Excluded pixels are set to 0 in the subtracted raster.
    """
    img = img.astype(np.float32, copy=False)
    if radius <= 0:
        return img.copy(), BackgroundEstimate(np.zeros_like(img))
    est = estimate_background(img, radius, max_background, by_reconstruction)
    out = img - est.background
    if est.exclusion_mask is not None:
        out[est.exclusion_mask] = 0.0
    return out.astype(np.float32, copy=False), est
