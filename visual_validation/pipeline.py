"""
================================================================================
Visual Validator
================================================================================

Facade over the visual validation pipeline.

    Screenshot -> ImagePreprocessor -> TrainingCorpusStore -> ModelTrainer
               -> ModelRegistry -> InferenceEngine -> AnomalyAnalyzer
               -> ValidationResult

Components are injected at construction and looked up by Capability, so a
deployment can swap any stage (e.g. another storage backend or trainer)
without touching the facade. ``VisualValidator.from_config`` builds the
default set from config/config.yaml.

Features:
    - Async operations; CPU and disk work runs in worker threads
    - Per-operation timeouts (ValidationTimeoutError)
    - Per-baseline training exclusivity (reject or queue)
    - Pinned model versions for reproducible detections
    - Verdicts and anomaly overlays attached to Allure when a report is active

Usage:
    async with VisualValidator.from_config() as validator:
        version = await validator.train_baseline("homepage", screenshots)
        result = await validator.validate_against_baseline("homepage", screenshot)
        assert result.is_valid, result.anomalies

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import allure
from loguru import logger

from visual_tools.report_tools.allure_utils import attach_validation_result

from .analyzer import AnalysisPolicy, AnomalyAnalyzer
from .concurrency import Deadline, TrainingGuard, run_with_deadline
from .config_loader import ConfigLoader
from .corpus_store import TrainingCorpusStore, validate_baseline_name
from .errors import ModelMismatchError, ValidationTimeoutError
from .inference import InferenceEngine
from .models import (
    BaselineState,
    PreprocessedImage,
    Screenshot,
    TrainingParameters,
    ValidationResult,
)
from .preprocessor import ImagePreprocessor, PreprocessConfig
from .registry import DEFAULT_CACHE_SIZE, ModelRegistry
from .storage import BlobStorage, FileSystemBlobStorage, create_storage
from .trainer import ModelTrainer


def _as_batch(screenshots: Union[Screenshot, Sequence[Screenshot]]) -> List[Screenshot]:
    return [screenshots] if isinstance(screenshots, Screenshot) else list(screenshots)


class Capability(str, Enum):
    """Pipeline stages a VisualValidator is composed of."""
    STORAGE = "storage"
    PREPROCESS = "preprocess"
    CORPUS = "corpus"
    TRAIN = "train"
    REGISTRY = "registry"
    INFER = "infer"
    ANALYZE = "analyze"
    TRAINING_GUARD = "training_guard"


class VisualValidator:
    """
    Trains baselines and validates screenshots against them.

    Usage:
        validator = VisualValidator.from_config()
        await validator.open()
        try:
            await validator.train_baseline("checkout", screenshots, label={"build": "1.4.2"})
            result = await validator.validate_against_baseline("checkout", screenshot)
        finally:
            await validator.close()
    """

    def __init__(
        self,
        storage: BlobStorage,
        preprocessor: Optional[ImagePreprocessor] = None,
        corpus_store: Optional[TrainingCorpusStore] = None,
        trainer: Optional[ModelTrainer] = None,
        registry: Optional[ModelRegistry] = None,
        inference: Optional[InferenceEngine] = None,
        analyzer: Optional[AnomalyAnalyzer] = None,
        training_guard: Optional[TrainingGuard] = None,
        timeouts: Optional[Mapping[str, Optional[float]]] = None,
        attach_reports: bool = True,
    ):
        """
        Initialize the validator from its components.

        Args:
            storage: Blob storage shared by the corpus store and the registry
            preprocessor: Screenshot normalization (default: native size, RGB)
            corpus_store: Training sample store (default: on ``storage``)
            trainer: Model trainer (default parameters)
            registry: Versioned model store (default: on ``storage``)
            inference: Inference engine
            analyzer: Anomaly analyzer (default policy)
            training_guard: Training exclusivity (default: in-process, reject)
            timeouts: Default timeouts in seconds, keys "training" and
                "detection"; None disables the timeout
            attach_reports: Attach verdicts to the active Allure report
        """
        self._components: Dict[Capability, Any] = {
            Capability.STORAGE: storage,
            Capability.PREPROCESS: preprocessor or ImagePreprocessor(),
            Capability.CORPUS: corpus_store or TrainingCorpusStore(storage),
            Capability.TRAIN: trainer or ModelTrainer(),
            Capability.REGISTRY: registry or ModelRegistry(storage),
            Capability.INFER: inference or InferenceEngine(),
            Capability.ANALYZE: analyzer or AnomalyAnalyzer(),
            Capability.TRAINING_GUARD: training_guard or TrainingGuard(namespace=f"storage-{id(storage)}"),
        }
        self.timeouts: Dict[str, Optional[float]] = {"training": None, "detection": None}
        self.timeouts.update(timeouts or {})
        self.attach_reports = attach_reports
        self._opened = False

    @classmethod
    def from_config(cls, config: Optional[ConfigLoader] = None) -> "VisualValidator":
        """Build the default component set from configuration."""
        config = config or ConfigLoader()
        storage = create_storage(config)

        if isinstance(storage, FileSystemBlobStorage):
            namespace = str(storage.root.resolve())
            lock_dir = storage.root / ".locks"
        else:
            namespace, lock_dir = f"storage-{id(storage)}", None

        return cls(
            storage=storage,
            preprocessor=ImagePreprocessor(PreprocessConfig.from_config(config)),
            trainer=ModelTrainer(TrainingParameters.from_config(config)),
            registry=ModelRegistry(storage, cache_size=int(config.get("registry.cache_size", DEFAULT_CACHE_SIZE))),
            inference=InferenceEngine(keep_excess_map=bool(config.get("reporting.attach_heatmap", False))),
            analyzer=AnomalyAnalyzer(AnalysisPolicy.from_config(config)),
            training_guard=TrainingGuard(
                namespace=namespace,
                lock_dir=lock_dir,
                policy=str(config.get("training.concurrency", "reject")),
            ),
            timeouts={
                "training": config.get("timeouts.training", None),
                "detection": config.get("timeouts.detection", None),
            },
            attach_reports=bool(config.get("reporting.attach_results", True)),
        )

    # =========================================================================
    # Components & lifecycle
    # =========================================================================

    def component(self, capability: Capability) -> Any:
        """Return the component registered for ``capability``."""
        return self._components[Capability(capability)]

    @property
    def storage(self) -> BlobStorage:
        return self._components[Capability.STORAGE]

    @property
    def preprocessor(self) -> ImagePreprocessor:
        return self._components[Capability.PREPROCESS]

    @property
    def corpus_store(self) -> TrainingCorpusStore:
        return self._components[Capability.CORPUS]

    @property
    def trainer(self) -> ModelTrainer:
        return self._components[Capability.TRAIN]

    @property
    def registry(self) -> ModelRegistry:
        return self._components[Capability.REGISTRY]

    @property
    def inference(self) -> InferenceEngine:
        return self._components[Capability.INFER]

    @property
    def analyzer(self) -> AnomalyAnalyzer:
        return self._components[Capability.ANALYZE]

    @property
    def training_guard(self) -> TrainingGuard:
        return self._components[Capability.TRAINING_GUARD]

    async def __aenter__(self) -> "VisualValidator":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        self._opened = True
        logger.debug(
            f"Visual validator opened ({type(self.storage).__name__}, "
            f"training policy={self.training_guard.policy})"
        )

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        self.storage.close()
        logger.debug("Visual validator closed")

    def _ensure_open(self) -> None:
        if not self._opened:
            raise RuntimeError("Validator not opened. Call open() or use 'async with'.")

    def _deadline(self, timeout: Optional[float], kind: str, operation: str) -> Deadline:
        return Deadline(timeout if timeout is not None else self.timeouts.get(kind), operation)

    # =========================================================================
    # Training
    # =========================================================================

    def _prepare_samples(self, name: str, screenshots: Sequence[Screenshot]) -> List[PreprocessedImage]:
        """Preprocess a batch and check it fits the baseline before any write."""
        images = self.preprocessor.preprocess_all(screenshots)
        shapes = {(image.shape, image.color_mode) for image in images}
        if len(shapes) > 1:
            raise ModelMismatchError(f"Samples for baseline '{name}' differ in size or colour mode")

        latest = self.registry.latest_version(name)
        if latest is not None:
            artifact = self.registry.get(name, latest)
            for image in images:
                self.inference.check_compatible(image, artifact)
        return images

    def _append_samples(self, name: str, images: Sequence[PreprocessedImage], label: Optional[Dict]) -> List[int]:
        return [self.corpus_store.append(name, image, label).sequence for image in images]

    async def _train_locked(self, name: str, deadline: Deadline) -> int:
        """Load, train and publish; the caller holds the training guard."""
        corpus = await run_with_deadline(self.corpus_store.load, name, deadline=deadline)
        artifact = await run_with_deadline(self.trainer.train, corpus, deadline=deadline)
        # Not cancellable: runs synchronously in the event loop thread
        return self.registry.publish(name, artifact)

    @allure.step("Train baseline: {name}")
    async def train_baseline(
        self,
        name: str,
        screenshots: Union[Screenshot, Sequence[Screenshot]],
        label: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Add screenshots to a baseline's corpus, train and publish a new version.

        The training slot is taken before anything is written, so a rejected
        or queued-out call leaves the corpus untouched. If training times out
        the call's samples are removed again. If the corpus is still too small,
        InsufficientDataError is raised and the samples stay for a later run.

        Args:
            name: Baseline name
            screenshots: One screenshot or a batch

        Returns:
            The published model version

        Raises:
            InvalidImageError: A screenshot could not be preprocessed (nothing stored)
            ModelMismatchError: The screenshots do not fit the baseline's model
            InsufficientDataError: Corpus smaller than training.min_samples
            TrainingInProgressError: Another training run holds the baseline (nothing stored)
            ValidationTimeoutError: Training did not finish in time (nothing stored or published)
        """
        self._ensure_open()
        validate_baseline_name(name)
        screenshots = _as_batch(screenshots)
        if not screenshots:
            raise ValueError("train_baseline requires at least one screenshot")

        deadline = self._deadline(timeout, "training", f"train_baseline('{name}')")
        images = await run_with_deadline(self._prepare_samples, name, screenshots, deadline=deadline)

        async with self.training_guard.hold(name, deadline):
            deadline.check()
            appended = await asyncio.to_thread(self._append_samples, name, images, label)
            logger.info(f"Baseline '{name}': appended {len(appended)} sample(s)")
            try:
                version = await self._train_locked(name, deadline)
            except ValidationTimeoutError:
                await asyncio.to_thread(self.corpus_store.remove, name, appended)
                raise

        logger.info(f"Baseline '{name}' trained: v{version}")
        return version

    @allure.step("Add samples: {name}")
    async def add_samples(
        self,
        name: str,
        screenshots: Union[Screenshot, Sequence[Screenshot]],
        label: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append one screenshot or a batch to a baseline's corpus without training. Returns the corpus size."""
        self._ensure_open()
        validate_baseline_name(name)
        images = await asyncio.to_thread(self._prepare_samples, name, _as_batch(screenshots))
        await asyncio.to_thread(self._append_samples, name, images, label)
        return await asyncio.to_thread(self.corpus_store.count, name)

    @allure.step("Retrain baseline: {name}")
    async def retrain_baseline(self, name: str, timeout: Optional[float] = None) -> int:
        """
        Train and publish a new version from the stored corpus.

        Raises:
            BaselineNotFoundError: No corpus exists for the baseline
        """
        self._ensure_open()
        validate_baseline_name(name)
        deadline = self._deadline(timeout, "training", f"retrain_baseline('{name}')")
        async with self.training_guard.hold(name, deadline):
            version = await self._train_locked(name, deadline)
        logger.info(f"Baseline '{name}' retrained: v{version}")
        return version

    # =========================================================================
    # Detection
    # =========================================================================

    def _detect(
        self,
        name: str,
        screenshot: Screenshot,
        policy: Optional[AnalysisPolicy],
        version: Optional[int],
    ) -> Tuple[ValidationResult, Tuple[int, int], Any]:
        artifact = self.registry.get_latest(name) if version is None else self.registry.get(name, version)
        image = self.preprocessor.preprocess(screenshot)
        output = self.inference.infer(image, artifact)
        result = self.analyzer.analyze(output, policy)
        return result, (artifact.width, artifact.height), output.excess_map

    @allure.step("Validate against baseline: {name}")
    async def validate_against_baseline(
        self,
        name: str,
        screenshot: Screenshot,
        policy: Optional[AnalysisPolicy] = None,
        version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ValidationResult:
        """
        Validate a screenshot against a baseline's latest (or pinned) model.

        Args:
            name: Baseline name
            screenshot: Screenshot to validate
            policy: Verdict policy (default: the analyzer's policy)
            version: Pin a model version instead of the latest one
            timeout: Seconds before ValidationTimeoutError

        Raises:
            ModelNotFoundError: No published model (or no such version)
            ModelMismatchError: Screenshot does not fit the model
            InvalidImageError: Screenshot could not be decoded
        """
        self._ensure_open()
        validate_baseline_name(name)
        deadline = self._deadline(timeout, "detection", f"validate_against_baseline('{name}')")
        result, canonical_size, excess = await run_with_deadline(
            self._detect, name, screenshot, policy, version, deadline=deadline
        )

        log = logger.info if result.is_valid else logger.warning
        log(
            f"Validated '{screenshot.page_id or name}' against '{name}' v{result.artifact_version}: "
            f"{'PASS' if result.is_valid else 'FAIL'} (confidence={result.confidence:.4f}, "
            f"anomalies={len(result.anomalies)})"
        )
        if self.attach_reports:
            attach_validation_result(result, screenshot.image_bytes, canonical_size, excess)
        return result

    # =========================================================================
    # Inspection & maintenance
    # =========================================================================

    async def list_baseline_versions(self, name: str) -> List[int]:
        """Published versions of a baseline in ascending order (empty if none)."""
        validate_baseline_name(name)
        return await asyncio.to_thread(self.registry.list_versions, name)

    async def list_baselines(self) -> List[str]:
        """Baselines that have a corpus or a published model."""
        corpus = await asyncio.to_thread(self.corpus_store.list_baselines)
        models = await asyncio.to_thread(self.registry.list_baselines)
        return sorted(set(corpus) | set(models))

    async def baseline_state(self, name: str) -> BaselineState:
        validate_baseline_name(name)
        published = await asyncio.to_thread(self.registry.latest_version, name) is not None
        if self.training_guard.is_training(name):
            return BaselineState.RETRAINING if published else BaselineState.TRAINING
        return BaselineState.TRAINED if published else BaselineState.UNINITIALIZED

    @allure.step("Delete baseline: {name}")
    async def delete_baseline(self, name: str) -> None:
        """
        Remove a baseline's corpus and every model version.

        Raises:
            TrainingInProgressError: A training run holds the baseline
        """
        self._ensure_open()
        validate_baseline_name(name)
        guard = TrainingGuard(
            namespace=self.training_guard.namespace,
            lock_dir=self.training_guard.lock_dir,
        )
        async with guard.hold(name):
            models = await asyncio.to_thread(self.registry.delete, name)
            samples = await asyncio.to_thread(self.corpus_store.delete, name)
        logger.info(f"Deleted baseline '{name}': {models} model version(s), {samples} sample(s)")


__all__ = [
    "Capability",
    "VisualValidator",
]
