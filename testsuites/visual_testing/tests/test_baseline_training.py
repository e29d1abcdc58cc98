"""
================================================================================
Baseline Training Test Cases
================================================================================

This module contains end-to-end scenarios for training and maintaining
visual baselines through the VisualValidator facade.

Key Testing Patterns:
- Synthetic page screenshots with deterministic capture noise
- Both storage backends through the parametrized storage fixture
- Allure integration for detailed reporting

================================================================================
"""

import asyncio

import allure
import pytest

from visual_validation import (
    BaselineState,
    Capability,
    InMemoryBlobStorage,
    InsufficientDataError,
    ModelMismatchError,
    ModelNotFoundError,
    TrainingInProgressError,
    ValidationTimeoutError,
    VisualValidator,
)

from testsuites.visual_testing.framework import Block, make_screenshot


async def wait_until_training(validator: VisualValidator, name: str, timeout: float = 5.0) -> None:
    """Poll until a training run holds ``name``."""
    loop = asyncio.get_running_loop()
    give_up = loop.time() + timeout
    while not validator.training_guard.is_training(name):
        if loop.time() > give_up:
            raise AssertionError(f"Training of '{name}' never started")
        await asyncio.sleep(0.01)


@allure.epic("Visual Validation")
@allure.feature("Baseline Training")
class TestTrainBaseline:
    """Test cases for training and publishing baselines."""

    @allure.story("Train")
    @allure.title("Training publishes version 1 of a new baseline")
    @allure.severity(allure.severity_level.BLOCKER)
    @pytest.mark.P0
    @pytest.mark.smoke
    @pytest.mark.asyncio
    async def test_train_publishes_first_version(self, validator, baseline_screenshots):
        with allure.step("Train 'homepage' on 5 identical screenshots"):
            version = await validator.train_baseline("homepage", baseline_screenshots)

        with allure.step("Verify the published version"):
            assert version == 1
            assert await validator.list_baseline_versions("homepage") == [1]
            assert await validator.list_baselines() == ["homepage"]

        with allure.step("Verify the artifact metadata"):
            artifact = validator.registry.get_latest("homepage")
            assert (artifact.width, artifact.height) == (640, 480)
            assert artifact.sample_count == 5

    @allure.story("Train")
    @allure.title("Further training appends samples and bumps the version")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_versions_increase_monotonically(self, validator, noisy_screenshots):
        first = await validator.train_baseline("homepage", noisy_screenshots[:5], label={"build": "1.0"})
        second = await validator.train_baseline("homepage", noisy_screenshots[5:], label={"build": "1.1"})
        third = await validator.retrain_baseline("homepage")

        assert (first, second, third) == (1, 2, 3)
        assert await validator.list_baseline_versions("homepage") == [1, 2, 3]
        assert validator.registry.get("homepage", 1).sample_count == 5
        assert validator.registry.get("homepage", 3).sample_count == 8

    @allure.story("Train")
    @allure.title("Too few samples: nothing is published, samples are kept")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P0
    @pytest.mark.asyncio
    async def test_insufficient_samples(self, validator, baseline_screenshots):
        with allure.step("Train on 3 screenshots with the default minimum of 5"):
            with pytest.raises(InsufficientDataError) as exc_info:
                await validator.train_baseline("homepage", baseline_screenshots[:3])

        assert exc_info.value.available == 3
        assert exc_info.value.required == 5
        assert await validator.list_baseline_versions("homepage") == []
        assert await validator.baseline_state("homepage") == BaselineState.UNINITIALIZED

        with allure.step("Top up the corpus and train again"):
            assert await validator.add_samples("homepage", baseline_screenshots[3:]) == 5
            assert await validator.retrain_baseline("homepage") == 1

    @allure.story("Train")
    @allure.title("A baseline can be trained one screenshot at a time")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_train_one_screenshot_per_call(self, validator):
        with allure.step("The first four captures only grow the corpus"):
            for expected in range(1, 5):
                with pytest.raises(InsufficientDataError) as exc_info:
                    await validator.train_baseline("homepage", make_screenshot())
                assert exc_info.value.available == expected

        with allure.step("The fifth capture trains version 1"):
            assert await validator.train_baseline("homepage", make_screenshot()) == 1

        assert validator.registry.get_latest("homepage").sample_count == 5
        assert await validator.add_samples("homepage", make_screenshot()) == 6

    @allure.story("Train")
    @allure.title("Screenshots of another size are rejected once a model exists")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_training_rejects_mismatched_samples(self, validator, baseline_screenshots):
        await validator.train_baseline("homepage", baseline_screenshots)

        with pytest.raises(ModelMismatchError):
            await validator.train_baseline("homepage", [make_screenshot(800, 600)] * 5)

        assert validator.corpus_store.count("homepage") == 5
        assert await validator.list_baseline_versions("homepage") == [1]

    @allure.story("Train")
    @allure.title("Mixed sizes within one batch are rejected before any write")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P2
    @pytest.mark.asyncio
    async def test_mixed_batch_rejected(self, validator):
        batch = [make_screenshot(), make_screenshot(800, 600)]

        with pytest.raises(ModelMismatchError):
            await validator.train_baseline("homepage", batch)

        assert validator.corpus_store.count("homepage") == 0

    @allure.story("Train")
    @allure.title("Invalid arguments are rejected")
    @allure.severity(allure.severity_level.MINOR)
    @pytest.mark.P3
    @pytest.mark.asyncio
    async def test_invalid_arguments(self, validator, baseline_screenshots):
        with pytest.raises(ValueError):
            await validator.train_baseline("homepage", [])
        with pytest.raises(ValueError):
            await validator.train_baseline("../escape", baseline_screenshots)

    @allure.story("Timeouts")
    @allure.title("Training past its timeout publishes and keeps nothing")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_training_timeout(self, slow_validator, baseline_screenshots):
        with pytest.raises(ValidationTimeoutError):
            await slow_validator.train_baseline("homepage", baseline_screenshots, timeout=0.2)

        assert await slow_validator.list_baseline_versions("homepage") == []
        assert slow_validator.corpus_store.count("homepage") == 0
        assert not slow_validator.training_guard.is_training("homepage")


@allure.epic("Visual Validation")
@allure.feature("Baseline Lifecycle")
class TestBaselineLifecycle:
    """Test cases for baseline state, deletion and validator composition."""

    @allure.story("State")
    @allure.title("Baseline state follows training and retraining")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_state_transitions(self, slow_validator, baseline_screenshots):
        assert await slow_validator.baseline_state("homepage") == BaselineState.UNINITIALIZED

        with allure.step("Observe the first training run"):
            task = asyncio.create_task(slow_validator.train_baseline("homepage", baseline_screenshots))
            await wait_until_training(slow_validator, "homepage")
            assert await slow_validator.baseline_state("homepage") == BaselineState.TRAINING
            await task
            assert await slow_validator.baseline_state("homepage") == BaselineState.TRAINED

        with allure.step("Observe a retraining run"):
            task = asyncio.create_task(slow_validator.retrain_baseline("homepage"))
            await wait_until_training(slow_validator, "homepage")
            assert await slow_validator.baseline_state("homepage") == BaselineState.RETRAINING
            assert await task == 2
            assert await slow_validator.baseline_state("homepage") == BaselineState.TRAINED

    @allure.story("Delete")
    @allure.title("Deleting a baseline removes its corpus and models")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_delete_baseline(self, validator, baseline_screenshots):
        await validator.train_baseline("homepage", baseline_screenshots)
        await validator.train_baseline("checkout", baseline_screenshots)

        await validator.delete_baseline("homepage")

        assert await validator.list_baselines() == ["checkout"]
        assert await validator.list_baseline_versions("homepage") == []
        with pytest.raises(ModelNotFoundError):
            await validator.validate_against_baseline("homepage", baseline_screenshots[0])

        with allure.step("A recreated baseline continues the version numbering"):
            assert await validator.train_baseline("homepage", baseline_screenshots) == 2
            assert await validator.list_baseline_versions("homepage") == [2]
            with pytest.raises(ModelNotFoundError):
                await validator.validate_against_baseline("homepage", baseline_screenshots[0], version=1)

    @allure.story("Delete")
    @allure.title("Validators sharing the store never serve a deleted model")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P1
    @pytest.mark.asyncio
    async def test_delete_seen_by_other_validator(self, make_validator, baseline_screenshots):
        first = await make_validator()
        second = await make_validator()
        redesigned = [make_screenshot(blocks=[Block(100, 100, 50, 50)]) for _ in range(5)]

        with allure.step("The first validator caches v1 of 'homepage'"):
            await first.train_baseline("homepage", baseline_screenshots)
            before = await first.validate_against_baseline("homepage", redesigned[0])
            assert (before.artifact_version, before.is_valid) == (1, False)

        with allure.step("The second validator deletes and recreates 'homepage' on the redesign"):
            await second.delete_baseline("homepage")
            assert await second.train_baseline("homepage", redesigned) == 2

        for validator in (first, second):
            result = await validator.validate_against_baseline("homepage", redesigned[0])
            assert (result.artifact_version, result.is_valid) == (2, True)
            with pytest.raises(ModelNotFoundError):
                await validator.validate_against_baseline("homepage", redesigned[0], version=1)

    @allure.story("Delete")
    @allure.title("A baseline cannot be deleted while it trains")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P2
    @pytest.mark.asyncio
    async def test_delete_while_training(self, slow_validator, baseline_screenshots):
        task = asyncio.create_task(slow_validator.train_baseline("homepage", baseline_screenshots))
        await wait_until_training(slow_validator, "homepage")

        with pytest.raises(TrainingInProgressError):
            await slow_validator.delete_baseline("homepage")

        assert await task == 1

    @allure.story("Composition")
    @allure.title("Components are looked up by capability")
    @allure.severity(allure.severity_level.MINOR)
    @pytest.mark.P3
    @pytest.mark.asyncio
    async def test_component_lookup(self, validator):
        assert validator.component(Capability.REGISTRY) is validator.registry
        assert validator.component("train") is validator.trainer
        assert validator.component(Capability.STORAGE) is validator.storage

    @allure.story("Composition")
    @allure.title("Operations require an opened validator")
    @allure.severity(allure.severity_level.MINOR)
    @pytest.mark.P3
    @pytest.mark.asyncio
    async def test_closed_validator(self, baseline_screenshots):
        validator = VisualValidator(storage=InMemoryBlobStorage())

        with pytest.raises(RuntimeError):
            await validator.train_baseline("homepage", baseline_screenshots)

    @allure.story("Configuration")
    @allure.title("from_config honours the storage backend override")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P2
    @pytest.mark.asyncio
    async def test_from_config_memory_backend(self, monkeypatch, baseline_screenshots):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("TRAINING_MIN_SAMPLES", "3")
        monkeypatch.setenv("REPORTING_ATTACH_RESULTS", "false")

        async with VisualValidator.from_config() as validator:
            assert isinstance(validator.storage, InMemoryBlobStorage)
            assert validator.trainer.parameters.min_samples == 3
            assert validator.attach_reports is False

            assert await validator.train_baseline("config-homepage", baseline_screenshots[:3]) == 1
            result = await validator.validate_against_baseline("config-homepage", baseline_screenshots[0])
            assert result.is_valid
