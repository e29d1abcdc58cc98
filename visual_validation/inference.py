"""
================================================================================
Inference Engine
================================================================================

Scores a preprocessed image against a model artifact.

Output:
    - global distance: mean excess over the whole image
    - region distances, ordered: DOM regions first (in capture order, tagged
      with their DOM tag), then grid cells in row-major order (tagged "grid")
      computed over pixels not owned by any DOM region

No resizing happens here: an image whose canonical shape or colour mode
differs from the artifact is a caller error (ModelMismatchError).

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

from typing import List, Optional

import numpy as np
from loguru import logger

from .distance import excess_map, grid_cells, hot_rect, region_distance
from .errors import ModelMismatchError
from .models import GRID_TAG, InferenceOutput, ModelArtifact, PreprocessedImage, RegionScore


class InferenceEngine:
    """
    Envelope-distance inference.

    Usage:
        >>> engine = InferenceEngine()
        >>> output = engine.infer(image, registry.get_latest("homepage"))
        >>> output.global_distance
        0.0
    """

    def __init__(self, cell_size: Optional[int] = None, keep_excess_map: bool = False) -> None:
        """
        Args:
            cell_size: Grid cell size; defaults to the artifact's training cell size
            keep_excess_map: Attach the per-pixel excess map to the output (reporting)
        """
        self.cell_size = cell_size
        self.keep_excess_map = keep_excess_map

    @staticmethod
    def check_compatible(image: PreprocessedImage, artifact: ModelArtifact) -> None:
        if image.shape != artifact.mean.shape:
            raise ModelMismatchError(
                f"Image {image.width}x{image.height}x{image.channels} does not match "
                f"model '{artifact.baseline}' v{artifact.version} "
                f"({artifact.width}x{artifact.height}x{artifact.channels})"
            )
        if image.color_mode != artifact.color_mode:
            raise ModelMismatchError(
                f"Image colour mode '{image.color_mode.value}' does not match model "
                f"'{artifact.baseline}' v{artifact.version} ('{artifact.color_mode.value}')"
            )

    def infer(self, image: PreprocessedImage, artifact: ModelArtifact) -> InferenceOutput:
        """
        Score ``image`` against ``artifact``.

        Raises:
            ModelMismatchError: Canonical shape or colour mode differ
        """
        self.check_compatible(image, artifact)

        excess = excess_map(image.pixels, artifact.mean, artifact.tolerance)
        cell_size = self.cell_size or artifact.parameters.cell_size

        regions: List[RegionScore] = []
        owned = np.zeros(excess.shape, dtype=bool)
        for dom in image.dom_regions:
            rect = dom.rect.clip(image.width, image.height)
            if rect.is_empty():
                continue
            regions.append(
                RegionScore(
                    rect=rect,
                    tag=dom.tag,
                    distance=region_distance(excess, rect),
                    hot_rect=hot_rect(excess, rect),
                )
            )
            owned[rect.y:rect.bottom, rect.x:rect.right] = True

        has_dom = bool(regions)
        for cell in grid_cells(image.width, image.height, cell_size):
            mask = owned if has_dom else None
            regions.append(
                RegionScore(
                    rect=cell,
                    tag=GRID_TAG,
                    distance=region_distance(excess, cell, mask),
                    hot_rect=hot_rect(excess, cell, mask),
                )
            )

        output = InferenceOutput(
            baseline=artifact.baseline,
            artifact_version=artifact.version,
            global_distance=float(excess.mean()),
            region_distances=tuple(regions),
            noise_floor=artifact.noise_floor,
            region_noise_floor=artifact.region_noise_floor,
            excess_map=excess if self.keep_excess_map else None,
        )
        logger.debug(
            f"Inference on '{artifact.baseline}' v{artifact.version}: "
            f"global_distance={output.global_distance:.6f}, regions={len(regions)}"
        )
        return output


def infer(image: PreprocessedImage, artifact: ModelArtifact) -> InferenceOutput:
    """Module-level shortcut for ``InferenceEngine().infer``."""
    return InferenceEngine().infer(image, artifact)


__all__ = [
    "InferenceEngine",
    "infer",
]
