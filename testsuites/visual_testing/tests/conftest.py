"""
================================================================================
Visual Testing Pytest Configuration
================================================================================

This module configures pytest for the visual validation scenarios, providing
fixtures for validator lifecycle, storage backends and synthetic screenshots.

Key Features:
- Every scenario runs against the in-memory and the filesystem backend
- Validator factory for scenarios that swap a pipeline component
- Deterministic baseline screenshot sets (identical and noisy captures)

================================================================================
"""

import os
from typing import AsyncGenerator, Callable, List
from uuid import uuid4

import pytest

from visual_validation import (
    BlobStorage,
    FileSystemBlobStorage,
    InferenceEngine,
    InMemoryBlobStorage,
    Screenshot,
    VisualValidator,
)
from visual_validation.concurrency import TrainingGuard
from visual_validation.config_loader import ConfigLoader

from testsuites.visual_testing.framework import SlowTrainer, make_screenshot


# ================================================================================
# Storage & Validator Fixtures
# ================================================================================

@pytest.fixture(params=["memory", "filesystem"])
def storage(request, tmp_path) -> BlobStorage:
    """
    Function-scoped blob storage.

    Parametrized over both backends so every scenario checks the in-memory
    store and the durable filesystem store alike. STORAGE_BACKEND restricts
    the run to one of them.
    """
    selected = os.environ.get("STORAGE_BACKEND")
    if selected and selected != request.param:
        pytest.skip(f"storage backend restricted to {selected}")
    if request.param == "memory":
        return InMemoryBlobStorage()
    return FileSystemBlobStorage(tmp_path / "baselines")


@pytest.fixture
async def make_validator(storage: BlobStorage) -> AsyncGenerator[Callable[..., VisualValidator], None]:
    """
    Factory fixture building opened validators over the test's storage.

    Keyword arguments are passed to VisualValidator; a training guard with a
    per-test namespace (and a lock directory on the filesystem backend) and an
    inference engine honouring reporting.attach_heatmap are supplied unless
    given. Validators are closed at teardown.
    """
    namespace = f"visual-test-{uuid4().hex}"
    lock_dir = storage.root / ".locks" if isinstance(storage, FileSystemBlobStorage) else None
    heatmaps = bool(ConfigLoader().get("reporting.attach_heatmap", False))
    created: List[VisualValidator] = []

    async def factory(**kwargs) -> VisualValidator:
        policy = kwargs.pop("training_policy", "reject")
        kwargs.setdefault(
            "training_guard",
            TrainingGuard(namespace=namespace, lock_dir=lock_dir, policy=policy),
        )
        kwargs.setdefault("attach_reports", True)
        kwargs.setdefault("inference", InferenceEngine(keep_excess_map=heatmaps))
        validator = VisualValidator(storage=storage, **kwargs)
        await validator.open()
        created.append(validator)
        return validator

    yield factory

    for validator in created:
        await validator.close()


@pytest.fixture
async def validator(make_validator) -> VisualValidator:
    """Opened validator with default components."""
    return await make_validator()


@pytest.fixture
async def slow_validator(make_validator) -> VisualValidator:
    """Opened validator whose trainer takes half a second per run."""
    return await make_validator(trainer=SlowTrainer(delay=0.5))


# ================================================================================
# Screenshot Fixtures
# ================================================================================

@pytest.fixture
def baseline_screenshots() -> List[Screenshot]:
    """Five identical 640x480 captures of the known-good homepage."""
    return [make_screenshot(page_id="homepage") for _ in range(5)]


@pytest.fixture
def noisy_screenshots() -> List[Screenshot]:
    """Eight 640x480 captures of the homepage with small capture noise."""
    return [make_screenshot(page_id="homepage", noise=2, seed=seed) for seed in range(1, 9)]
