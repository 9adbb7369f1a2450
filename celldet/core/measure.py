"""
Per-label intensity statistics.

- RunningStatistics accumulator (count, sum, sum of squares, min, max)
- One vectorized pass over a (channel, labels) pair for all labels
- Conversion to "<Compartment>: <channel> <statistic>" measurements
"""

from __future__ import annotations
import math
from typing import Dict, List
import numpy as np

from .errors import InvalidInputError

STATISTICS = ("mean", "sum", "std dev", "max", "min", "range")


class RunningStatistics:
    """Incremental accumulator for one label."""

    __slots__ = ("size", "sum", "sum_sq", "min", "max", "_ssd")

    def __init__(self) -> None:
        self.size = 0
        self.sum = 0.0
        self.sum_sq = 0.0
        self.min = math.inf
        self.max = -math.inf
        self._ssd = None  # sum of squared deviations from the final mean

    def add(self, value: float) -> None:
        if not math.isfinite(value):
            return
        self.size += 1
        self.sum += value
        self.sum_sq += value * value
        if value < self.min:
            self.min = value
        if value > self.max:
            self.max = value
        self._ssd = None

    @property
    def mean(self) -> float:
        return self.sum / self.size if self.size else math.nan

    @property
    def variance(self) -> float:
        """Population variance."""
        if self.size == 0:
            return math.nan
        if self._ssd is not None:
            return max(0.0, self._ssd / self.size)
        return max(0.0, (self.sum_sq - self.sum * self.sum / self.size) / self.size)

    @property
    def std_dev(self) -> float:
        return math.sqrt(self.variance) if self.size else math.nan

    @property
    def minimum(self) -> float:
        return self.min if self.size else math.nan

    @property
    def maximum(self) -> float:
        return self.max if self.size else math.nan

    @property
    def range(self) -> float:
        return self.max - self.min if self.size else math.nan

    def values(self) -> Dict[str, float]:
        """Statistic name -> value, keyed as in STATISTICS."""
        return {
            "mean": self.mean,
            "sum": self.sum if self.size else math.nan,
            "std dev": self.std_dev,
            "max": self.maximum,
            "min": self.minimum,
            "range": self.range,
        }

    def __repr__(self) -> str:
        return f"RunningStatistics(n={self.size}, mean={self.mean:.4g}, sd={self.std_dev:.4g})"


def compute_running_statistics(img: np.ndarray, labels: np.ndarray, n_labels: int) -> List[RunningStatistics]:
    """
    Accumulate statistics of `img` for labels 1..n_labels.

    Element i of the returned list belongs to label i + 1. Labels with no
    pixels (inactive or out of range) keep empty accumulators; non-finite
    pixel values are ignored.
    """
    if img.shape != labels.shape:
        raise InvalidInputError(f"Raster shape {img.shape} does not match labels {labels.shape}")
    stats = [RunningStatistics() for _ in range(max(0, n_labels))]
    if n_labels <= 0:
        return stats

    lab = labels.ravel()
    vals = img.ravel().astype(np.float64)
    keep = (lab > 0) & (lab <= n_labels) & np.isfinite(vals)
    lab = lab[keep].astype(np.intp)
    vals = vals[keep]
    if lab.size == 0:
        return stats

    n = n_labels + 1
    counts = np.bincount(lab, minlength=n)
    sums = np.bincount(lab, weights=vals, minlength=n)
    sums_sq = np.bincount(lab, weights=vals * vals, minlength=n)
    mins = np.full(n, np.inf)
    maxs = np.full(n, -np.inf)
    np.minimum.at(mins, lab, vals)
    np.maximum.at(maxs, lab, vals)

    # second pass against each label's own mean
    means = np.divide(sums, counts, out=np.zeros(n), where=counts > 0)
    dev = vals - means[lab]
    ssd = np.bincount(lab, weights=dev * dev, minlength=n)

    for i in range(1, n):
        c = int(counts[i])
        if c == 0:
            continue
        s = stats[i - 1]
        s.size = c
        s.sum = float(sums[i])
        s.sum_sq = float(sums_sq[i])
        s.min = float(mins[i])
        s.max = float(maxs[i])
        s._ssd = float(ssd[i])
    return stats


def statistics_to_measurements(prefix: str, channel: str, stats: RunningStatistics) -> Dict[str, float]:
    """Flatten one accumulator into '<prefix><channel> <statistic>' entries."""
    return {f"{prefix}{channel} {k}": float(v) for k, v in stats.values().items()}


def measure_channels(channels: Dict[str, np.ndarray], labels: np.ndarray,
                     n_labels: int) -> Dict[str, List[RunningStatistics]]:
    """Statistics for every channel against the same label raster."""
    return {name: compute_running_statistics(img, labels, n_labels) for name, img in channels.items()}
