"""
================================================================================
Visual Validation Data Models
================================================================================

Immutable value types shared by every pipeline stage: captures, canonical
images, corpora, model artifacts, inference output and verdicts.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def freeze_array(array: np.ndarray, dtype=np.float32) -> np.ndarray:
    """Return a contiguous read-only copy of ``array``."""
    frozen = np.ascontiguousarray(array, dtype=dtype).copy()
    frozen.setflags(write=False)
    return frozen


# ================================================================================
# Geometry
# ================================================================================

@dataclass(frozen=True)
class Rect:
    """Axis-aligned integer box in pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def touches(self, other: "Rect", gap: int = 1) -> bool:
        """True if the boxes overlap or lie within ``gap`` pixels of each other."""
        return (
            self.x <= other.right + gap - 1 and other.x <= self.right + gap - 1
            and self.y <= other.bottom + gap - 1 and other.y <= self.bottom + gap - 1
        )

    def contains(self, other: "Rect") -> bool:
        return (
            self.x <= other.x and self.y <= other.y
            and other.right <= self.right and other.bottom <= self.bottom
        )

    def union(self, other: "Rect") -> "Rect":
        x, y = min(self.x, other.x), min(self.y, other.y)
        return Rect(x, y, max(self.right, other.right) - x, max(self.bottom, other.bottom) - y)

    def clip(self, width: int, height: int) -> "Rect":
        """Clip to an image of the given size; may return an empty rect."""
        x, y = max(self.x, 0), max(self.y, 0)
        right, bottom = min(self.right, width), min(self.bottom, height)
        return Rect(x, y, max(right - x, 0), max(bottom - y, 0))

    def scaled(self, sx: float, sy: float) -> "Rect":
        x = int(round(self.x * sx))
        y = int(round(self.y * sy))
        right = int(round(self.right * sx))
        bottom = int(round(self.bottom * sy))
        return Rect(x, y, right - x, bottom - y)

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_value(cls, value: Any) -> "Rect":
        """Build from a Rect, a mapping or an ``(x, y, w, h)`` sequence."""
        if isinstance(value, Rect):
            return value
        if isinstance(value, dict):
            return cls(int(value["x"]), int(value["y"]), int(value["width"]), int(value["height"]))
        x, y, w, h = value
        return cls(int(x), int(y), int(w), int(h))


@dataclass(frozen=True)
class DomRegion:
    """DOM element bounding box supplied by the capture collaborator."""
    rect: Rect
    tag: str

    def to_dict(self) -> Dict[str, Any]:
        return {"rect": self.rect.to_dict(), "tag": self.tag}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomRegion":
        return cls(rect=Rect.from_value(data["rect"]), tag=str(data["tag"]))


# ================================================================================
# Images
# ================================================================================

class ColorMode(str, Enum):
    """Colour normalization applied by the preprocessor."""
    NONE = "none"
    GRAYSCALE = "grayscale"
    PERCEPTUAL = "perceptual"


@dataclass(frozen=True)
class Screenshot:
    """
    Raw capture handed over by the capture collaborator.

    Attributes:
        image_bytes: Encoded image (PNG/JPEG/...)
        width: Declared viewport width
        height: Declared viewport height
        page_id: Logical page identifier
        timestamp: Capture time
        dom_regions: Optional DOM bounding boxes in screenshot coordinates
    """
    image_bytes: bytes
    width: int
    height: int
    page_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    dom_regions: Tuple[DomRegion, ...] = ()

    @property
    def viewport(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True, eq=False)
class PreprocessedImage:
    """Canonical float32 H x W x C representation of a screenshot."""
    pixels: np.ndarray
    color_mode: ColorMode
    page_id: str = ""
    timestamp: Optional[datetime] = None
    dom_regions: Tuple[DomRegion, ...] = ()
    source_size: Tuple[int, int] = (0, 0)

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.height, self.width, self.channels

    def to_bytes(self) -> bytes:
        """Canonical byte form; identical for identical inputs and config."""
        return self.pixels.tobytes()

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.to_bytes()).hexdigest()


# ================================================================================
# Training Data
# ================================================================================

@dataclass(frozen=True)
class CorpusSample:
    """One appended training image with its label metadata."""
    sequence: int
    image: PreprocessedImage
    label: Dict[str, Any] = field(default_factory=dict)
    appended_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TrainingCorpus:
    """Ordered, append-only view of one baseline's samples."""
    baseline: str
    samples: Tuple[CorpusSample, ...] = ()

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self) -> Iterator[CorpusSample]:
        return iter(self.samples)

    @property
    def shapes(self) -> List[Tuple[int, int, int]]:
        return sorted({sample.image.shape for sample in self.samples})

    @property
    def digest(self) -> str:
        """Order-independent fingerprint of the corpus content."""
        h = hashlib.sha256()
        for sample_digest in sorted(sample.image.digest for sample in self.samples):
            h.update(sample_digest.encode("ascii"))
        return h.hexdigest()


@dataclass(frozen=True)
class TrainingParameters:
    """
    Knobs for the envelope trainer.

    Attributes:
        min_samples: Minimum corpus size accepted for training
        sigma_multiplier: Width of the tolerance band in standard deviations
        min_tolerance: Lower bound of the per-pixel tolerance band
        min_noise_floor: Lower bound of the recorded global noise floor
        min_region_noise_floor: Lower bound of the recorded region noise floor
        cell_size: Edge length (pixels) of the grid used for region scores
    """
    min_samples: int = 5
    sigma_multiplier: float = 3.0
    min_tolerance: float = 0.02
    min_noise_floor: float = 0.002
    min_region_noise_floor: float = 0.004
    cell_size: int = 32

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_samples": self.min_samples,
            "sigma_multiplier": self.sigma_multiplier,
            "min_tolerance": self.min_tolerance,
            "min_noise_floor": self.min_noise_floor,
            "min_region_noise_floor": self.min_region_noise_floor,
            "cell_size": self.cell_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingParameters":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_config(cls, config) -> "TrainingParameters":
        defaults = cls()
        return cls(
            min_samples=int(config.get("training.min_samples", defaults.min_samples)),
            sigma_multiplier=float(config.get("training.sigma_multiplier", defaults.sigma_multiplier)),
            min_tolerance=float(config.get("training.min_tolerance", defaults.min_tolerance)),
            min_noise_floor=float(config.get("training.min_noise_floor", defaults.min_noise_floor)),
            min_region_noise_floor=float(
                config.get("training.min_region_noise_floor", defaults.min_region_noise_floor)
            ),
            cell_size=int(config.get("training.cell_size", defaults.cell_size)),
        )


@dataclass(frozen=True, eq=False)
class ModelArtifact:
    """
    Immutable output of one training run.

    ``version`` is 0 until the registry publishes the artifact.
    """
    baseline: str
    mean: np.ndarray
    tolerance: np.ndarray
    noise_floor: float
    region_noise_floor: float
    color_mode: ColorMode
    sample_count: int
    corpus_digest: str
    parameters: TrainingParameters
    version: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def height(self) -> int:
        return int(self.mean.shape[0])

    @property
    def width(self) -> int:
        return int(self.mean.shape[1])

    @property
    def channels(self) -> int:
        return int(self.mean.shape[2])

    def with_version(self, version: int) -> "ModelArtifact":
        return replace(self, version=version)

    def describe(self) -> Dict[str, Any]:
        return {
            "baseline": self.baseline,
            "version": self.version,
            "size": f"{self.width}x{self.height}x{self.channels}",
            "color_mode": self.color_mode.value,
            "noise_floor": self.noise_floor,
            "region_noise_floor": self.region_noise_floor,
            "sample_count": self.sample_count,
            "corpus_digest": self.corpus_digest,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


# ================================================================================
# Inference & Verdicts
# ================================================================================

@dataclass(frozen=True)
class RegionScore:
    """Distance of one partition region; ``hot_rect`` bounds its out-of-band pixels."""
    rect: Rect
    tag: str
    distance: float
    hot_rect: Optional[Rect] = None

    @property
    def is_grid_cell(self) -> bool:
        return self.tag == GRID_TAG


GRID_TAG = "grid"


@dataclass(frozen=True)
class InferenceOutput:
    """Raw scores produced by the inference engine."""
    baseline: str
    artifact_version: int
    global_distance: float
    region_distances: Tuple[RegionScore, ...]
    noise_floor: float
    region_noise_floor: float
    excess_map: Optional[np.ndarray] = field(default=None, compare=False, repr=False)


class Severity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"


@dataclass(frozen=True)
class AnomalyRegion:
    """A localized area whose distance exceeds policy tolerance."""
    rect: Rect
    kind: str
    severity: Severity
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rect": self.rect.to_dict(),
            "kind": self.kind,
            "severity": self.severity.value,
            "distance": round(self.distance, 6),
        }


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of one detection run against exactly one artifact version."""
    is_valid: bool
    confidence: float
    anomalies: Tuple[AnomalyRegion, ...]
    baseline: str
    artifact_version: int
    global_distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline": self.baseline,
            "artifact_version": self.artifact_version,
            "is_valid": self.is_valid,
            "confidence": round(self.confidence, 6),
            "global_distance": self.global_distance,
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies],
        }


class BaselineState(str, Enum):
    """Lifecycle of a baseline as observed by one pipeline instance."""
    UNINITIALIZED = "uninitialized"
    TRAINING = "training"
    TRAINED = "trained"
    RETRAINING = "retraining"


__all__ = [
    "Rect",
    "DomRegion",
    "ColorMode",
    "Screenshot",
    "PreprocessedImage",
    "CorpusSample",
    "TrainingCorpus",
    "TrainingParameters",
    "ModelArtifact",
    "RegionScore",
    "GRID_TAG",
    "InferenceOutput",
    "Severity",
    "AnomalyRegion",
    "ValidationResult",
    "BaselineState",
    "freeze_array",
]
