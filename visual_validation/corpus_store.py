"""
================================================================================
Training Corpus Store
================================================================================

Append-only persistence of preprocessed training images per baseline.

Layout in blob storage:
    corpus/<baseline>/<sequence>.npy   - pixel array (numpy, no pickle)
    corpus/<baseline>/<sequence>.json  - label + image metadata

The pixel blob is written before the metadata blob, and only samples with a
metadata blob are loaded, so a sample becomes visible only once it is fully
durable. Appends to one baseline are serialized through the storage lock.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import io
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger

from .errors import BaselineNotFoundError, StorageError
from .models import ColorMode, CorpusSample, DomRegion, PreprocessedImage, TrainingCorpus, freeze_array
from .storage import BlobStorage


CORPUS_PREFIX = "corpus"

# Human-chosen baseline names, usable as a storage key segment
BASELINE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$")


def validate_baseline_name(name: str) -> str:
    if not isinstance(name, str) or not BASELINE_NAME_PATTERN.match(name):
        raise ValueError(
            f"Invalid baseline name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return name


def encode_pixels(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    np.save(buffer, pixels, allow_pickle=False)
    return buffer.getvalue()


def decode_pixels(data: bytes) -> np.ndarray:
    return np.load(io.BytesIO(data), allow_pickle=False)


class TrainingCorpusStore:
    """
    Durable, append-only store of training samples.

    Usage:
        >>> store = TrainingCorpusStore(storage)
        >>> store.append("homepage", image, {"source": "nightly"})
        >>> corpus = store.load("homepage")
        >>> len(corpus)
        1
    """

    def __init__(self, storage: BlobStorage) -> None:
        self.storage = storage

    @staticmethod
    def _prefix(baseline: str) -> str:
        return f"{CORPUS_PREFIX}/{baseline}/"

    def _sequences(self, baseline: str) -> List[int]:
        sequences = []
        for key in self.storage.list(self._prefix(baseline)):
            name = key.rsplit("/", 1)[-1]
            if name.endswith(".json"):
                sequences.append(int(name[: -len(".json")]))
        return sorted(sequences)

    def append(
        self,
        baseline_name: str,
        image: PreprocessedImage,
        label: Optional[Dict[str, Any]] = None,
    ) -> CorpusSample:
        """
        Durably append one sample; creates the baseline on first use.

        Returns:
            The stored CorpusSample (with its sequence number)
        """
        validate_baseline_name(baseline_name)
        label = dict(label or {})
        try:
            json.dumps(label)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Label must be JSON serializable: {e}") from e

        prefix = self._prefix(baseline_name)
        with self.storage.lock(f"corpus-{baseline_name}"):
            existing = self._sequences(baseline_name)
            sequence = (existing[-1] + 1) if existing else 1
            appended_at = datetime.now(timezone.utc)
            metadata = {
                "sequence": sequence,
                "label": label,
                "appended_at": appended_at.isoformat(),
                "page_id": image.page_id,
                "timestamp": image.timestamp.isoformat() if image.timestamp else None,
                "color_mode": image.color_mode.value,
                "shape": list(image.shape),
                "source_size": list(image.source_size),
                "dom_regions": [r.to_dict() for r in image.dom_regions],
                "digest": image.digest,
            }
            self.storage.put(f"{prefix}{sequence:08d}.npy", encode_pixels(image.pixels))
            self.storage.put(
                f"{prefix}{sequence:08d}.json",
                json.dumps(metadata, sort_keys=True).encode("utf-8"),
            )

        logger.info(f"Appended sample #{sequence} to baseline '{baseline_name}'")
        return CorpusSample(sequence=sequence, image=image, label=label, appended_at=appended_at)

    def _load_sample(self, baseline: str, sequence: int) -> CorpusSample:
        prefix = self._prefix(baseline)
        metadata = json.loads(self.storage.get(f"{prefix}{sequence:08d}.json").decode("utf-8"))
        pixels = decode_pixels(self.storage.get(f"{prefix}{sequence:08d}.npy"))
        if list(pixels.shape) != metadata["shape"]:
            raise StorageError(
                f"Corrupt sample #{sequence} in baseline '{baseline}': "
                f"shape {list(pixels.shape)} != {metadata['shape']}"
            )
        timestamp = metadata.get("timestamp")
        image = PreprocessedImage(
            pixels=freeze_array(pixels),
            color_mode=ColorMode(metadata["color_mode"]),
            page_id=metadata.get("page_id", ""),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
            dom_regions=tuple(DomRegion.from_dict(r) for r in metadata.get("dom_regions", [])),
            source_size=tuple(metadata.get("source_size", (0, 0))),
        )
        return CorpusSample(
            sequence=sequence,
            image=image,
            label=metadata.get("label", {}),
            appended_at=datetime.fromisoformat(metadata["appended_at"]),
        )

    def load(self, baseline_name: str) -> TrainingCorpus:
        """
        Load every sample of a baseline in append order.

        Raises:
            BaselineNotFoundError: The baseline has no samples
        """
        validate_baseline_name(baseline_name)
        sequences = self._sequences(baseline_name)
        if not sequences:
            raise BaselineNotFoundError(baseline_name)

        samples = tuple(self._load_sample(baseline_name, seq) for seq in sequences)
        logger.debug(f"Loaded {len(samples)} sample(s) for baseline '{baseline_name}'")
        return TrainingCorpus(baseline=baseline_name, samples=samples)

    def exists(self, baseline_name: str) -> bool:
        return bool(self._sequences(baseline_name))

    def count(self, baseline_name: str) -> int:
        return len(self._sequences(baseline_name))

    def list_baselines(self) -> List[str]:
        names = set()
        for key in self.storage.list(f"{CORPUS_PREFIX}/"):
            parts = key.split("/")
            if len(parts) == 3 and parts[2].endswith(".json"):
                names.add(parts[1])
        return sorted(names)

    def remove(self, baseline_name: str, sequences: Sequence[int]) -> int:
        """Remove the given samples of a baseline. Returns the number removed."""
        validate_baseline_name(baseline_name)
        prefix = self._prefix(baseline_name)
        with self.storage.lock(f"corpus-{baseline_name}"):
            present = set(self._sequences(baseline_name))
            removed = [seq for seq in sequences if seq in present]
            for seq in removed:
                self.storage.delete(f"{prefix}{seq:08d}.json")
                self.storage.delete(f"{prefix}{seq:08d}.npy")
        logger.info(f"Removed {len(removed)} sample(s) from baseline '{baseline_name}'")
        return len(removed)

    def delete(self, baseline_name: str) -> int:
        """Remove every sample of a baseline. Returns the number removed."""
        validate_baseline_name(baseline_name)
        with self.storage.lock(f"corpus-{baseline_name}"):
            keys = self.storage.list(self._prefix(baseline_name))
            # Metadata first so a partially deleted sample is never loaded
            for key in sorted(keys, key=lambda k: not k.endswith(".json")):
                self.storage.delete(key)
        removed = sum(1 for k in keys if k.endswith(".json"))
        logger.info(f"Deleted {removed} sample(s) from baseline '{baseline_name}'")
        return removed


__all__ = [
    "TrainingCorpusStore",
    "validate_baseline_name",
    "encode_pixels",
    "decode_pixels",
]
