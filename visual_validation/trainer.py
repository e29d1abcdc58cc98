"""
================================================================================
Model Trainer
================================================================================

Builds a ModelArtifact (the expected visual signature of a baseline) from its
training corpus.

Algorithm:
    1. Stream the corpus once, accumulating float64 sums and sums of squares
    2. Per-pixel mean and population standard deviation
    3. Tolerance band = max(sigma_multiplier * std, min_tolerance)
    4. Noise floor: every sample is scored against the envelope of the other
       samples (leave-one-out, derived from the running sums); the largest
       global and grid-cell distances become the artifact's noise floors

Re-training an unchanged corpus with the same parameters reproduces the same
envelope and noise floors up to floating-point rounding.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import time
from typing import Optional, Tuple

import numpy as np
from loguru import logger

from .distance import excess_map, max_cell_distance, tolerance_band
from .errors import InsufficientDataError, ModelMismatchError
from .models import ModelArtifact, TrainingCorpus, TrainingParameters, freeze_array


class ModelTrainer:
    """
    Pixel-statistics envelope trainer.

    Usage:
        >>> trainer = ModelTrainer(TrainingParameters(min_samples=5))
        >>> artifact = trainer.train(corpus_store.load("homepage"))
        >>> artifact.noise_floor
        0.002
    """

    def __init__(self, parameters: Optional[TrainingParameters] = None) -> None:
        self.parameters = parameters or TrainingParameters()

    def train(
        self,
        corpus: TrainingCorpus,
        parameters: Optional[TrainingParameters] = None,
    ) -> ModelArtifact:
        """
        Train an unpublished artifact (version 0) from a corpus.

        Raises:
            InsufficientDataError: Fewer samples than ``min_samples``
            ModelMismatchError: Samples differ in canonical shape or colour mode
        """
        params = parameters or self.parameters
        count = len(corpus)
        if count < max(params.min_samples, 1):
            raise InsufficientDataError(corpus.baseline, count, max(params.min_samples, 1))

        shapes = corpus.shapes
        if len(shapes) != 1:
            raise ModelMismatchError(
                f"Corpus of baseline '{corpus.baseline}' mixes image shapes: {shapes}"
            )
        color_modes = {sample.image.color_mode for sample in corpus}
        if len(color_modes) != 1:
            raise ModelMismatchError(
                f"Corpus of baseline '{corpus.baseline}' mixes colour modes: "
                f"{sorted(m.value for m in color_modes)}"
            )

        started = time.perf_counter()
        total, total_sq = self._accumulate(corpus)
        mean, std = self._moments(total, total_sq, count)
        tolerance = tolerance_band(std, params.sigma_multiplier, params.min_tolerance)

        noise, region_noise = self._leave_one_out(corpus, total, total_sq, params)
        noise_floor = max(noise, params.min_noise_floor)
        region_noise_floor = max(region_noise, params.min_region_noise_floor)

        artifact = ModelArtifact(
            baseline=corpus.baseline,
            mean=freeze_array(mean),
            tolerance=freeze_array(tolerance),
            noise_floor=float(noise_floor),
            region_noise_floor=float(region_noise_floor),
            color_mode=color_modes.pop(),
            sample_count=count,
            corpus_digest=corpus.digest,
            parameters=params,
        )
        logger.info(
            f"Trained baseline '{corpus.baseline}' on {count} sample(s) "
            f"({artifact.width}x{artifact.height}) in {time.perf_counter() - started:.2f}s: "
            f"noise_floor={artifact.noise_floor:.6f}, "
            f"region_noise_floor={artifact.region_noise_floor:.6f}"
        )
        return artifact

    @staticmethod
    def _accumulate(corpus: TrainingCorpus) -> Tuple[np.ndarray, np.ndarray]:
        total = np.zeros(corpus.shapes[0], dtype=np.float64)
        total_sq = np.zeros_like(total)
        for sample in corpus:
            pixels = sample.image.pixels.astype(np.float64)
            total += pixels
            total_sq += pixels * pixels
        return total, total_sq

    @staticmethod
    def _moments(total: np.ndarray, total_sq: np.ndarray, count: int) -> Tuple[np.ndarray, np.ndarray]:
        mean = total / count
        variance = np.maximum(total_sq / count - mean * mean, 0.0)
        return mean, np.sqrt(variance)

    def _leave_one_out(
        self,
        corpus: TrainingCorpus,
        total: np.ndarray,
        total_sq: np.ndarray,
        params: TrainingParameters,
    ) -> Tuple[float, float]:
        """Largest global and cell distances of each sample against the others."""
        count = len(corpus)
        if count < 2:
            return 0.0, 0.0

        worst_global = 0.0
        worst_region = 0.0
        for sample in corpus:
            pixels = sample.image.pixels.astype(np.float64)
            mean, std = self._moments(total - pixels, total_sq - pixels * pixels, count - 1)
            excess = excess_map(
                pixels, mean, tolerance_band(std, params.sigma_multiplier, params.min_tolerance)
            )
            worst_global = max(worst_global, float(excess.mean()))
            worst_region = max(worst_region, max_cell_distance(excess, params.cell_size))
        return worst_global, worst_region


def train(corpus: TrainingCorpus, parameters: Optional[TrainingParameters] = None) -> ModelArtifact:
    """Module-level shortcut for ``ModelTrainer().train``."""
    return ModelTrainer(parameters).train(corpus)


__all__ = [
    "ModelTrainer",
    "train",
]
