"""
================================================================================
Envelope Distance
================================================================================

Distance metric shared by the trainer and the inference engine.

A pixel's excess is how far it falls outside the tolerance band around the
expected value, averaged over channels. Global and regional distances are
means of the excess map, so training noise floors and inference scores are
directly comparable.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np

from .models import Rect


def excess_map(pixels: np.ndarray, mean: np.ndarray, tolerance: np.ndarray) -> np.ndarray:
    """Per-pixel (H x W) distance outside the tolerance band."""
    deviation = np.abs(np.asarray(pixels, dtype=np.float64) - mean)
    return np.maximum(deviation - tolerance, 0.0).mean(axis=2)


def tolerance_band(std: np.ndarray, sigma_multiplier: float, min_tolerance: float) -> np.ndarray:
    return np.maximum(std * sigma_multiplier, min_tolerance)


def grid_cells(width: int, height: int, cell_size: int) -> List[Rect]:
    """Row-major grid covering the image; edge cells may be smaller."""
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")
    cells = []
    for y in range(0, height, cell_size):
        for x in range(0, width, cell_size):
            cells.append(Rect(x, y, min(cell_size, width - x), min(cell_size, height - y)))
    return cells


def region_distance(excess: np.ndarray, rect: Rect, owned: Optional[np.ndarray] = None) -> float:
    """
    Mean excess over ``rect``.

    ``owned`` is an optional boolean mask of pixels belonging to other
    regions; those pixels count as zero excess.
    """
    window = excess[rect.y:rect.bottom, rect.x:rect.right]
    if window.size == 0:
        return 0.0
    if owned is not None:
        window = np.where(owned[rect.y:rect.bottom, rect.x:rect.right], 0.0, window)
    return float(window.mean())


def max_cell_distance(excess: np.ndarray, cell_size: int) -> float:
    height, width = excess.shape
    return max(
        (region_distance(excess, cell) for cell in grid_cells(width, height, cell_size)),
        default=0.0,
    )


def hot_rect(excess: np.ndarray, rect: Rect, owned: Optional[np.ndarray] = None) -> Optional[Rect]:
    """Tight bounding box (image coordinates) of out-of-band pixels inside ``rect``."""
    window = excess[rect.y:rect.bottom, rect.x:rect.right] > 0.0
    if owned is not None:
        window = window & ~owned[rect.y:rect.bottom, rect.x:rect.right]
    if not window.any():
        return None
    rows = np.flatnonzero(window.any(axis=1))
    cols = np.flatnonzero(window.any(axis=0))
    return Rect(
        rect.x + int(cols[0]),
        rect.y + int(rows[0]),
        int(cols[-1] - cols[0]) + 1,
        int(rows[-1] - rows[0]) + 1,
    )


__all__ = [
    "excess_map",
    "tolerance_band",
    "grid_cells",
    "region_distance",
    "max_cell_distance",
    "hot_rect",
]
