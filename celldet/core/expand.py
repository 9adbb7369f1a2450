"""
Grow nuclei into approximate whole-cell regions.

Each nucleus label floods outward over the distance-to-nucleus map and
stops either at `cell_expansion` pixels or where it meets a neighbour.
"""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Dict, List, Optional
import numpy as np

from .measure import RunningStatistics, measure_channels
from .morphology import distance_to_background, seeded_watershed
from .segment import NucleusSegmentation


@dataclass
class CellExpansion:
    """Cell labels (nucleus pixels included) and cytoplasm labels (nucleus pixels removed)."""
    cell_labels: np.ndarray
    cytoplasm_labels: np.ndarray

    def cell_area(self, label: int) -> int:
        return int(np.count_nonzero(self.cell_labels == label))


def expand_cells(nuclei: NucleusSegmentation, cell_expansion: float) -> Optional[CellExpansion]:
    """Return the expanded cell labels, or None when expansion is disabled."""
    if cell_expansion <= 0:
        return None
    nucleus_mask = nuclei.labels > 0
    if not nucleus_mask.any():
        empty = np.zeros_like(nuclei.labels)
        return CellExpansion(empty, empty.copy())

    # distance of every pixel to the closest nucleus pixel
    dist = distance_to_background(~nucleus_mask)
    within = dist <= cell_expansion
    cells = seeded_watershed(dist, nuclei.labels, within, lines=False)

    cytoplasm = cells.copy()
    cytoplasm[nucleus_mask] = 0
    return CellExpansion(cells, cytoplasm)


def measure_compartments(
    expansion: CellExpansion,
    channels: Dict[str, np.ndarray],
    n_labels: int,
) -> Dict[str, Dict[str, List[RunningStatistics]]]:
    """Per-channel statistics keyed by compartment ('Cell', 'Cytoplasm')."""
    return {
        "Cell": measure_channels(channels, expansion.cell_labels, n_labels),
        "Cytoplasm": measure_channels(channels, expansion.cytoplasm_labels, n_labels),
    }


def area_ratio(nucleus_area: float, cell_area: float) -> float:
    """Nucleus/cell area ratio clamped to [0, 1]; nan for an empty cell."""
    if not cell_area or cell_area <= 0 or math.isnan(cell_area):
        return math.nan
    return min(max(nucleus_area / cell_area, 0.0), 1.0)
