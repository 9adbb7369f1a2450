"""
Exception types raised by the detection pipeline.
"""

from __future__ import annotations


class CellDetectionError(Exception):
    """Base class for all detection errors."""


class InvalidInputError(CellDetectionError, ValueError):
    """Missing/empty ROI, zero-sized region, mismatched rasters or bad parameters."""


class UnsupportedInputError(InvalidInputError):
    """No usable detection channel, or an unexpected multi-band layout."""


class DetectionCancelled(CellDetectionError):
    """Raised at a checkpoint when the caller requested cancellation."""
