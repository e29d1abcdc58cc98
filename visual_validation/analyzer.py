"""
================================================================================
Anomaly Analyzer
================================================================================

Turns raw inference output into a ValidationResult under a policy.

Decision rule:
    confidence = 1 - min(1, global_distance / (noise_floor * safety_margin))
    a region exceeds when distance > region_noise_floor * safety_margin
    is_valid   = confidence >= confidence_threshold
                 and anomalies (after dropping ignored kinds) <= max_allowed

Touching grid cells that exceed are reported as one anomaly whose box is the
union of the cells' out-of-band pixel boxes. DOM regions are reported
individually, with their DOM tag as the anomaly kind.

Pure computation: no I/O, no side effects.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from loguru import logger

from .models import (
    GRID_TAG,
    AnomalyRegion,
    InferenceOutput,
    Rect,
    RegionScore,
    Severity,
    ValidationResult,
)


@dataclass(frozen=True)
class AnalysisPolicy:
    """
    Verdict policy.

    Attributes:
        confidence_threshold: Minimum confidence for a pass
        max_allowed_anomaly_regions: Anomalies tolerated in a passing result
        ignored_anomaly_kinds: Region tags excluded from analysis
        safety_margin: Multiplier applied to the recorded noise floors
        severity_bounds: (moderate, severe) lower bounds on distance / local threshold
    """
    confidence_threshold: float = 0.9
    max_allowed_anomaly_regions: int = 0
    ignored_anomaly_kinds: FrozenSet[str] = field(default_factory=frozenset)
    safety_margin: float = 3.0
    severity_bounds: Tuple[float, float] = (4.0, 16.0)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ignored_anomaly_kinds", frozenset(self.ignored_anomaly_kinds))
        object.__setattr__(self, "severity_bounds", tuple(float(b) for b in self.severity_bounds))
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be within [0, 1], got {self.confidence_threshold}")
        if self.max_allowed_anomaly_regions < 0:
            raise ValueError("max_allowed_anomaly_regions must be >= 0")
        if self.safety_margin <= 0:
            raise ValueError(f"safety_margin must be positive, got {self.safety_margin}")
        low, high = self.severity_bounds
        if not 0 < low <= high:
            raise ValueError(f"severity_bounds must be ascending and positive, got {self.severity_bounds}")

    @classmethod
    def from_config(cls, config) -> "AnalysisPolicy":
        defaults = cls()
        return cls(
            confidence_threshold=float(
                config.get("analysis.confidence_threshold", defaults.confidence_threshold)
            ),
            max_allowed_anomaly_regions=int(
                config.get("analysis.max_allowed_anomaly_regions", defaults.max_allowed_anomaly_regions)
            ),
            ignored_anomaly_kinds=frozenset(config.get("analysis.ignored_anomaly_kinds", ()) or ()),
            safety_margin=float(config.get("analysis.safety_margin", defaults.safety_margin)),
            severity_bounds=tuple(config.get("analysis.severity_bounds", defaults.severity_bounds) or defaults.severity_bounds),
        )


def compute_confidence(global_distance: float, noise_floor: float, safety_margin: float) -> float:
    """Map a global distance to [0, 1] relative to the calibrated noise floor."""
    scale = noise_floor * safety_margin
    if scale <= 0:
        return 1.0 if global_distance <= 0 else 0.0
    return 1.0 - min(1.0, global_distance / scale)


def bucket_severity(distance: float, local_threshold: float, bounds: Sequence[float]) -> Severity:
    ratio = distance / local_threshold if local_threshold > 0 else math.inf
    if ratio >= bounds[1]:
        return Severity.SEVERE
    if ratio >= bounds[0]:
        return Severity.MODERATE
    return Severity.MINOR


class AnomalyAnalyzer:
    """
    Applies an AnalysisPolicy to inference output.

    Usage:
        >>> analyzer = AnomalyAnalyzer(AnalysisPolicy(max_allowed_anomaly_regions=1))
        >>> result = analyzer.analyze(output)
        >>> result.is_valid, result.confidence
        (True, 1.0)
    """

    def __init__(self, policy: Optional[AnalysisPolicy] = None) -> None:
        self.policy = policy or AnalysisPolicy()

    def analyze(self, output: InferenceOutput, policy: Optional[AnalysisPolicy] = None) -> ValidationResult:
        policy = policy or self.policy

        confidence = compute_confidence(output.global_distance, output.noise_floor, policy.safety_margin)
        local_threshold = output.region_noise_floor * policy.safety_margin

        candidates = [r for r in output.region_distances if r.tag not in policy.ignored_anomaly_kinds]
        exceeding = [r for r in candidates if r.distance > local_threshold]

        anomalies: List[AnomalyRegion] = []
        for region in exceeding:
            if not region.is_grid_cell:
                anomalies.append(
                    AnomalyRegion(
                        rect=region.hot_rect or region.rect,
                        kind=region.tag,
                        severity=bucket_severity(region.distance, local_threshold, policy.severity_bounds),
                        distance=region.distance,
                    )
                )

        grid_exceeding = [r for r in exceeding if r.is_grid_cell]
        grid_quiet = [r for r in candidates if r.is_grid_cell and r.distance <= local_threshold]
        for cluster in self._cluster_cells(grid_exceeding):
            distance = max(cell.distance for cell in cluster)
            anomalies.append(
                AnomalyRegion(
                    rect=self._cluster_box(cluster, grid_quiet),
                    kind=GRID_TAG,
                    severity=bucket_severity(distance, local_threshold, policy.severity_bounds),
                    distance=distance,
                )
            )

        anomalies.sort(key=lambda a: (a.rect.y, a.rect.x, a.kind))
        is_valid = (
            confidence >= policy.confidence_threshold
            and len(anomalies) <= policy.max_allowed_anomaly_regions
        )

        result = ValidationResult(
            is_valid=is_valid,
            confidence=confidence,
            anomalies=tuple(anomalies),
            baseline=output.baseline,
            artifact_version=output.artifact_version,
            global_distance=output.global_distance,
        )
        logger.debug(
            f"Analysis of '{output.baseline}' v{output.artifact_version}: "
            f"valid={is_valid}, confidence={confidence:.4f}, anomalies={len(anomalies)}, "
            f"ignored_kinds={sorted(policy.ignored_anomaly_kinds)}"
        )
        return result

    @staticmethod
    def _cluster_cells(cells: Sequence[RegionScore]) -> List[List[RegionScore]]:
        """Group grid cells that touch (8-connectivity) with union-find."""
        parent = list(range(len(cells)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for i in range(len(cells)):
            for j in range(i + 1, len(cells)):
                if cells[i].rect.touches(cells[j].rect):
                    parent[find(i)] = find(j)

        groups: Dict[int, List[RegionScore]] = {}
        for i, cell in enumerate(cells):
            groups.setdefault(find(i), []).append(cell)
        return list(groups.values())

    @staticmethod
    def _cluster_box(cluster: Sequence[RegionScore], quiet: Sequence[RegionScore]) -> Rect:
        box: Optional[Rect] = None
        for cell in cluster:
            part = cell.hot_rect or cell.rect
            box = part if box is None else box.union(part)

        # Out-of-band slivers in neighbouring cells that stayed under threshold
        for cell in quiet:
            if cell.hot_rect is None:
                continue
            if any(cell.rect.touches(member.rect) for member in cluster) and cell.hot_rect.touches(box):
                box = box.union(cell.hot_rect)
        return box


def analyze(output: InferenceOutput, policy: Optional[AnalysisPolicy] = None) -> ValidationResult:
    """Module-level shortcut for ``AnomalyAnalyzer().analyze``."""
    return AnomalyAnalyzer().analyze(output, policy)


__all__ = [
    "AnalysisPolicy",
    "AnomalyAnalyzer",
    "analyze",
    "compute_confidence",
    "bucket_severity",
]
