"""
================================================================================
Model Registry
================================================================================

Versioned, append-only store of ModelArtifacts per baseline.

Layout in blob storage:
    models/<baseline>/v<NNNNNN>.npz   - artifact (arrays + JSON manifest)
    models/<baseline>/LATEST          - {"latest": N, "versions": [...]}
    models/<baseline>/SEQUENCE        - highest version number ever assigned

Publishing reserves the number in SEQUENCE, writes the artifact blob and then
moves the LATEST pointer, each as an atomic single-key write under the
baseline's storage lock. Readers therefore see either the previous or the new
version. Only versions listed in LATEST are published: a blob written by a
publish that crashed before moving the pointer stays invisible for good.

SEQUENCE survives delete(), so a recreated baseline never reuses a number and
a version number always means the same artifact to every reader.

Loaded artifacts are immutable and cached, so a detection holding version N
is unaffected by the publication of N+1.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import io
import json
import re
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from loguru import logger

from .corpus_store import validate_baseline_name
from .errors import ModelNotFoundError, StorageError
from .models import ColorMode, ModelArtifact, TrainingParameters, freeze_array
from .storage import BlobStorage


MODELS_PREFIX = "models"
LATEST_POINTER = "LATEST"
SEQUENCE_KEY = "SEQUENCE"
_VERSION_FILE = re.compile(r"^v(\d{6,})\.npz$")

DEFAULT_CACHE_SIZE = 8


def serialize_artifact(artifact: ModelArtifact) -> bytes:
    """Encode an artifact as an ``.npz`` blob without pickled objects."""
    manifest = {
        "baseline": artifact.baseline,
        "version": artifact.version,
        "noise_floor": artifact.noise_floor,
        "region_noise_floor": artifact.region_noise_floor,
        "color_mode": artifact.color_mode.value,
        "sample_count": artifact.sample_count,
        "corpus_digest": artifact.corpus_digest,
        "parameters": artifact.parameters.to_dict(),
        "created_at": artifact.created_at.isoformat(),
    }
    buffer = io.BytesIO()
    np.savez(
        buffer,
        mean=artifact.mean,
        tolerance=artifact.tolerance,
        manifest=np.frombuffer(json.dumps(manifest, sort_keys=True).encode("utf-8"), dtype=np.uint8),
    )
    return buffer.getvalue()


def deserialize_artifact(data: bytes) -> ModelArtifact:
    with np.load(io.BytesIO(data), allow_pickle=False) as archive:
        manifest = json.loads(archive["manifest"].tobytes().decode("utf-8"))
        mean = archive["mean"]
        tolerance = archive["tolerance"]
    return ModelArtifact(
        baseline=manifest["baseline"],
        mean=freeze_array(mean),
        tolerance=freeze_array(tolerance),
        noise_floor=float(manifest["noise_floor"]),
        region_noise_floor=float(manifest["region_noise_floor"]),
        color_mode=ColorMode(manifest["color_mode"]),
        sample_count=int(manifest["sample_count"]),
        corpus_digest=manifest["corpus_digest"],
        parameters=TrainingParameters.from_dict(manifest["parameters"]),
        version=int(manifest["version"]),
        created_at=datetime.fromisoformat(manifest["created_at"]),
    )


class ModelRegistry:
    """
    Stores, versions and retrieves model artifacts by baseline name.

    Usage:
        >>> registry = ModelRegistry(storage)
        >>> version = registry.publish("homepage", artifact)
        >>> registry.get_latest("homepage").version == version
        True
    """

    def __init__(self, storage: BlobStorage, cache_size: int = DEFAULT_CACHE_SIZE) -> None:
        self.storage = storage
        self.cache_size = max(int(cache_size), 0)
        self._cache: "OrderedDict[Tuple[str, int], ModelArtifact]" = OrderedDict()
        self._cache_lock = threading.Lock()

    # =========================================================================
    # Keys
    # =========================================================================

    @staticmethod
    def _artifact_key(baseline: str, version: int) -> str:
        return f"{MODELS_PREFIX}/{baseline}/v{version:06d}.npz"

    @staticmethod
    def _pointer_key(baseline: str) -> str:
        return f"{MODELS_PREFIX}/{baseline}/{LATEST_POINTER}"

    @staticmethod
    def _sequence_key(baseline: str) -> str:
        return f"{MODELS_PREFIX}/{baseline}/{SEQUENCE_KEY}"

    def _read_pointer(self, baseline: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.storage.get(self._pointer_key(baseline))
        except StorageError:
            return None
        try:
            pointer = json.loads(raw.decode("utf-8"))
            return {"latest": int(pointer["latest"]), "versions": [int(v) for v in pointer["versions"]]}
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Corrupt version pointer for baseline '{baseline}': {e}") from e

    def _read_sequence(self, baseline: str) -> int:
        try:
            return int(self.storage.get(self._sequence_key(baseline)).decode("ascii").strip())
        except StorageError:
            return 0

    def _highest_assigned(self, baseline: str, pointer: Optional[Dict[str, Any]]) -> int:
        committed = pointer["versions"] if pointer else []
        return max([self._read_sequence(baseline), *self._stored_versions(baseline), *committed], default=0)

    def _stored_versions(self, baseline: str) -> List[int]:
        versions = []
        for key in self.storage.list(f"{MODELS_PREFIX}/{baseline}/"):
            match = _VERSION_FILE.match(key.rsplit("/", 1)[-1])
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    # =========================================================================
    # Cache
    # =========================================================================

    def _cache_get(self, baseline: str, version: int) -> Optional[ModelArtifact]:
        with self._cache_lock:
            artifact = self._cache.get((baseline, version))
            if artifact is not None:
                self._cache.move_to_end((baseline, version))
            return artifact

    def _cache_put(self, artifact: ModelArtifact) -> None:
        if self.cache_size == 0:
            return
        with self._cache_lock:
            self._cache[(artifact.baseline, artifact.version)] = artifact
            self._cache.move_to_end((artifact.baseline, artifact.version))
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def _cache_purge(self, baseline: str) -> None:
        with self._cache_lock:
            for key in [k for k in self._cache if k[0] == baseline]:
                del self._cache[key]

    # =========================================================================
    # Public API
    # =========================================================================

    def publish(self, baseline_name: str, artifact: ModelArtifact) -> int:
        """
        Publish an artifact as the next version of a baseline.

        Returns:
            The assigned version number (strictly increasing per baseline)
        """
        validate_baseline_name(baseline_name)
        if artifact.sample_count < 1:
            raise ValueError("Cannot publish an artifact that was not trained on any sample")
        if artifact.baseline != baseline_name:
            raise ValueError(
                f"Artifact was trained for '{artifact.baseline}', not '{baseline_name}'"
            )

        with self.storage.lock(f"models-{baseline_name}"):
            pointer = self._read_pointer(baseline_name)
            version = self._highest_assigned(baseline_name, pointer) + 1
            published = artifact.with_version(version)
            committed = (pointer["versions"] if pointer else []) + [version]

            self.storage.put(self._sequence_key(baseline_name), str(version).encode("ascii"))
            self.storage.put(self._artifact_key(baseline_name, version), serialize_artifact(published))
            self.storage.put(
                self._pointer_key(baseline_name),
                json.dumps({"latest": version, "versions": committed}).encode("utf-8"),
            )

        self._cache_put(published)
        logger.info(f"Published model v{version} for baseline '{baseline_name}'")
        return version

    def latest_version(self, baseline_name: str) -> Optional[int]:
        validate_baseline_name(baseline_name)
        pointer = self._read_pointer(baseline_name)
        return pointer["latest"] if pointer else None

    def get_latest(self, baseline_name: str) -> ModelArtifact:
        """
        Return the most recently published artifact.

        Raises:
            ModelNotFoundError: Nothing was published for the baseline
        """
        version = self.latest_version(baseline_name)
        if version is None:
            raise ModelNotFoundError(baseline_name)
        return self.get(baseline_name, version)

    def get(self, baseline_name: str, version: int) -> ModelArtifact:
        """
        Return a pinned artifact version.

        Raises:
            ModelNotFoundError: The version does not exist (or is not yet published)
        """
        validate_baseline_name(baseline_name)
        version = int(version)
        pointer = self._read_pointer(baseline_name)
        if pointer is None or version not in pointer["versions"]:
            raise ModelNotFoundError(baseline_name, version)

        cached = self._cache_get(baseline_name, version)
        if cached is not None:
            return cached
        try:
            artifact = deserialize_artifact(self.storage.get(self._artifact_key(baseline_name, version)))
        except StorageError:
            raise ModelNotFoundError(baseline_name, version) from None

        self._cache_put(artifact)
        logger.debug(f"Loaded model v{version} for baseline '{baseline_name}'")
        return artifact

    def list_versions(self, baseline_name: str) -> List[int]:
        """Published versions in ascending order."""
        validate_baseline_name(baseline_name)
        pointer = self._read_pointer(baseline_name)
        return sorted(pointer["versions"]) if pointer else []

    def list_baselines(self) -> List[str]:
        names = set()
        for key in self.storage.list(f"{MODELS_PREFIX}/"):
            parts = key.split("/")
            if len(parts) == 3 and parts[2] == LATEST_POINTER:
                names.add(parts[1])
        return sorted(names)

    def delete(self, baseline_name: str) -> int:
        """
        Remove every version of a baseline. Returns the number of blobs removed.

        SEQUENCE is kept, so a recreated baseline continues the numbering.
        """
        validate_baseline_name(baseline_name)
        with self.storage.lock(f"models-{baseline_name}"):
            highest = self._highest_assigned(baseline_name, self._read_pointer(baseline_name))
            if highest:
                self.storage.put(self._sequence_key(baseline_name), str(highest).encode("ascii"))
            # Pointer first: readers stop seeing the baseline before blobs go away
            self.storage.delete(self._pointer_key(baseline_name))
            versions = self._stored_versions(baseline_name)
            for version in versions:
                self.storage.delete(self._artifact_key(baseline_name, version))
        self._cache_purge(baseline_name)
        logger.info(f"Deleted {len(versions)} model version(s) of baseline '{baseline_name}'")
        return len(versions)

    def describe(self, baseline_name: str) -> Dict[int, Dict]:
        return {v: self.get(baseline_name, v).describe() for v in self.list_versions(baseline_name)}


__all__ = [
    "ModelRegistry",
    "serialize_artifact",
    "deserialize_artifact",
]
