"""
Watershed-based nucleus segmentation.

A Laplacian-of-Gaussian response of the (background-corrected) detection
channel is oversegmented by a seeded watershed; fragments above the
intensity threshold are fused again, optionally re-split by shape,
labelled and filtered by area and mean intensity.

The seed partition is cached per segmenter instance and reused while the
seed-relevant parameters and the input rasters are unchanged, so threshold
or area tweaks skip the expensive first half of the pipeline.

Supports cooperative cancellation via an optional `cancel_cb`.
"""

from __future__ import annotations
import enum
import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
import numpy as np

from .background import subtract_background
from .channels import ChannelSet
from .errors import DetectionCancelled, InvalidInputError
from .morphology import (
    dilate_3x3,
    erode_3x3,
    fill_holes,
    label_components,
    laplacian_of_gaussian,
    rank_max,
    rank_median,
    regional_maxima,
    seeded_watershed,
    split_by_shape,
)
from .params import DetectionParameters

logger = logging.getLogger(__name__)

DebugSink = Callable[[str, np.ndarray], None]

REFINE_SIGMA = 1.0
MEMBRANE_FILTER_RADIUS = 2.5
SEED_PROMINENCE = 0.001


class SegmenterState(enum.Enum):
    SEEDS_STALE = "seeds stale"
    SEEDS_COMPUTED = "seeds computed"
    FRAGMENTS_GATED = "fragments gated"
    REGIONS_MERGED = "regions merged"
    FILTERED = "filtered"
    LABELED = "labeled"


@dataclass
class NucleusSegmentation:
    """Kept nucleus regions; filtered labels are zeroed but not renumbered."""
    labels: np.ndarray
    active_labels: Tuple[int, ...]
    areas: Dict[int, int]
    means: Dict[int, float]
    n_labels: int  # labels assigned before filtering

    @property
    def mask(self) -> np.ndarray:
        return self.labels > 0

    def __len__(self) -> int:
        return len(self.active_labels)


@dataclass
class _SeedPartition:
    key: tuple
    fragments: np.ndarray
    rough_mask: np.ndarray
    to_measure: np.ndarray
    exclusion_mask: Optional[np.ndarray]


def _digest(*arrays: Optional[np.ndarray]) -> str:
    h = hashlib.blake2b(digest_size=16)
    for a in arrays:
        if a is None:
            h.update(b"-")
            continue
        a = np.ascontiguousarray(a)
        h.update(str((a.shape, a.dtype.str)).encode())
        h.update(a.tobytes())
    return h.hexdigest()


def _checkpoint(cancel_cb: Optional[Callable[[], bool]]) -> None:
    if cancel_cb is not None and cancel_cb():
        raise DetectionCancelled("Nucleus segmentation cancelled")


def validate_roi_mask(roi_mask: Optional[np.ndarray], shape: tuple) -> np.ndarray:
    """Return a boolean ROI mask for `shape`, rejecting empty or mismatched masks."""
    if len(shape) != 2 or shape[0] == 0 or shape[1] == 0:
        raise InvalidInputError(f"Zero-sized region: {shape}")
    if roi_mask is None:
        return np.ones(shape, bool)
    roi_mask = np.asarray(roi_mask)
    if roi_mask.shape != tuple(shape):
        raise InvalidInputError(f"ROI mask shape {roi_mask.shape} does not match region {shape}")
    roi_mask = roi_mask.astype(bool)
    if not roi_mask.any():
        raise InvalidInputError("ROI is empty")
    return roi_mask


def _label_means(labels: np.ndarray, values: np.ndarray, n: int) -> Tuple[np.ndarray, np.ndarray]:
    lab = labels.ravel()
    counts = np.bincount(lab, minlength=n + 1)
    sums = np.bincount(lab, weights=values.ravel().astype(np.float64), minlength=n + 1)
    means = np.divide(sums, counts, out=np.full(n + 1, np.nan), where=counts > 0)
    return counts, means


class NucleusSegmenter:
    """
    Stateful nucleus segmenter for one tile / ROI.

    Not thread-safe: use one instance per concurrently processed ROI.
    """

    def __init__(self, refine_boundary: bool = True) -> None:
        self.refine_boundary = refine_boundary
        self.state = SegmenterState.SEEDS_STALE
        self.seed_computations = 0
        self.last_run_completed = False
        self._seeds: Optional[_SeedPartition] = None

    @property
    def seeds_cached(self) -> bool:
        return self._seeds is not None

    def invalidate(self) -> None:
        """Drop the cached seed partition; the next call starts from scratch."""
        self._seeds = None
        self.state = SegmenterState.SEEDS_STALE
        self.last_run_completed = False

    def segment(
        self,
        channels: ChannelSet,
        roi_mask: Optional[np.ndarray],
        params: DetectionParameters,
        cancel_cb: Optional[Callable[[], bool]] = None,
        debug: Optional[DebugSink] = None,
    ) -> Optional[NucleusSegmentation]:
        """
        Segment nuclei inside `roi_mask`.

        Returns None when cancelled; the cache is then marked stale.

        Raises:
            InvalidInputError: empty or mismatched ROI.
        """
        roi = validate_roi_mask(roi_mask, channels.detection.shape)
        self.last_run_completed = False
        pair = channels.membrane_pair() if params.exclude_membrane_channel else None
        key = (params.seed_fingerprint(), channels.brightfield,
               _digest(channels.detection, roi, *(pair or (None, None))))
        try:
            if self._seeds is None or self._seeds.key != key:
                self.state = SegmenterState.SEEDS_STALE
                self._seeds = None
                self._seeds = self._compute_seeds(channels, roi, params, key, cancel_cb, debug)
            else:
                logger.debug("Reusing cached seed partition")
            self.state = SegmenterState.SEEDS_COMPUTED
            result = self._segment_from_seeds(channels, roi, params, cancel_cb, debug)
        except DetectionCancelled:
            logger.debug("Nucleus segmentation cancelled in state %s", self.state.value)
            self.invalidate()
            return None
        self.last_run_completed = True
        return result

    # ---- steps 1-6 ----
    def _compute_seeds(self, channels: ChannelSet, roi: np.ndarray, params: DetectionParameters,
                       key: tuple, cancel_cb, debug) -> _SeedPartition:
        fp = channels.detection.astype(np.float32, copy=True)
        if debug is not None:
            debug("Input image", fp.copy())

        # Median filter to reduce texture
        if params.median_radius > 0:
            fp = rank_median(fp, params.median_radius)
            if debug is not None:
                debug("Median filtered", fp.copy())
        _checkpoint(cancel_cb)

        # Zero pixels where the membrane stain meets or exceeds the nuclear stain
        if params.exclude_membrane_channel:
            pair = channels.membrane_pair()
            if pair is None:
                logger.warning("Membrane exclusion requested, but no nuclear/membrane channel pair is available")
            else:
                nuclear, membrane = pair
                keep = (nuclear > membrane).astype(np.uint8)
                keep = rank_median(keep, MEMBRANE_FILTER_RADIUS)
                keep = rank_max(keep, MEMBRANE_FILTER_RADIUS)
                fp *= keep.astype(np.float32)
                if debug is not None:
                    debug("Membrane excluded", fp.copy())

        exclusion = None
        if params.background_radius > 0:
            # The background ceiling is an optical-density value; fluorescence skips it
            max_background = params.max_background if channels.brightfield else float("nan")
            fp, est = subtract_background(fp, params.background_radius, max_background,
                                          params.background_by_reconstruction)
            exclusion = est.exclusion_mask
            to_measure = fp.copy()
            if debug is not None:
                debug("Background estimate", est.background.copy())
                debug("Background subtracted", fp.copy())
        else:
            to_measure = channels.detection.astype(np.float32, copy=True)

        response = laplacian_of_gaussian(fp, params.sigma)
        if debug is not None:
            debug("Laplacian of Gaussian filtered", response.copy())
        rough = response >= 0

        positive = roi & (response > 0)
        seeds = regional_maxima(response, roi, SEED_PROMINENCE)
        seeds[~positive] = 0
        fragments = seeded_watershed(-response, seeds, positive, lines=True)
        logger.debug("Watershed produced %d fragments", int(fragments.max()))
        if debug is not None:
            debug("Watershed labels", fragments.astype(np.float32))
        _checkpoint(cancel_cb)

        self.seed_computations += 1
        return _SeedPartition(key, fragments, rough, to_measure, exclusion)

    # ---- steps 7-12 ----
    def _segment_from_seeds(self, channels: ChannelSet, roi: np.ndarray, params: DetectionParameters,
                            cancel_cb, debug) -> NucleusSegmentation:
        seeds = self._seeds
        fragments = seeds.fragments
        n_frag = int(fragments.max())

        # Keep fragments brighter than the threshold and clear of high background
        _, frag_means = _label_means(fragments, seeds.to_measure, n_frag)
        keep = frag_means > params.threshold
        if seeds.exclusion_mask is not None:
            _, overlap = _label_means(fragments, seeds.exclusion_mask.astype(np.float32), n_frag)
            keep &= ~(overlap > 0)
        keep[0] = False
        bp = keep[fragments]
        self.state = SegmenterState.FRAGMENTS_GATED

        # Reconnect fragments of the same nucleus without leaking past the rough mask
        bp = dilate_3x3(bp) & seeds.rough_mask
        if params.watershed_post_process:
            bp = fill_holes(bp)
            bp = split_by_shape(bp)
        self.state = SegmenterState.REGIONS_MERGED
        _checkpoint(cancel_cb)

        bp &= roi
        if debug is not None:
            debug("Binary", bp.astype(np.float32))

        # Large sigmas push thin boundaries out by about a pixel
        if self.refine_boundary and params.sigma > 1.5:
            fine = laplacian_of_gaussian(channels.detection, REFINE_SIGMA) >= 0
            fine &= bp
            bp = erode_3x3(bp) | fine
            if debug is not None:
                debug("Refined boundaries", fine.astype(np.float32))

        labels, n = label_components(fill_holes(bp))
        if debug is not None:
            debug("Labeled ROIs", labels.astype(np.float32))
        _checkpoint(cancel_cb)

        counts, means = _label_means(labels, seeds.to_measure, n)
        drop = np.zeros(n + 1, bool)
        for i in range(1, n + 1):
            area = counts[i]
            if (not means[i] > params.threshold
                    or (params.min_area > 0 and area < params.min_area)
                    or (params.max_area > 0 and area > params.max_area)):
                drop[i] = True
        labels[drop[labels]] = 0
        active = tuple(i for i in range(1, n + 1) if not drop[i])
        self.state = SegmenterState.FILTERED
        logger.debug("%d of %d candidate nuclei kept", len(active), n)
        _checkpoint(cancel_cb)

        self.state = SegmenterState.LABELED
        return NucleusSegmentation(
            labels=labels,
            active_labels=active,
            areas={i: int(counts[i]) for i in active},
            means={i: float(means[i]) for i in active},
            n_labels=n,
        )
