"""
================================================================================
Training Concurrency Test Cases
================================================================================

This module contains scenarios where training runs and detections of the
same baseline overlap.

Key Testing Patterns:
- A slowed-down trainer to make training runs overlap reliably
- asyncio.gather to start operations together
- Allure integration for detailed reporting

================================================================================
"""

import asyncio

import allure
import pytest

from visual_validation import TrainingInProgressError, ValidationTimeoutError

from testsuites.visual_testing.framework import SlowTrainer, make_screenshot


@allure.epic("Visual Validation")
@allure.feature("Training Concurrency")
class TestTrainingConcurrency:
    """Test cases for overlapping training runs and detections."""

    @allure.story("Reject")
    @allure.title("A second training run of a busy baseline is rejected")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P0
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_reject_policy(self, slow_validator, baseline_screenshots):
        with allure.step("Start two training runs of 'homepage' together"):
            outcomes = await asyncio.gather(
                slow_validator.train_baseline("homepage", baseline_screenshots),
                slow_validator.train_baseline("homepage", baseline_screenshots),
                return_exceptions=True,
            )

        versions = [o for o in outcomes if isinstance(o, int)]
        rejected = [o for o in outcomes if isinstance(o, TrainingInProgressError)]
        assert versions == [1]
        assert len(rejected) == 1
        assert rejected[0].baseline == "homepage"
        assert await slow_validator.list_baseline_versions("homepage") == [1]

        with allure.step("The rejected call left the corpus untouched"):
            assert slow_validator.corpus_store.count("homepage") == 5
            assert slow_validator.registry.get("homepage", 1).sample_count == 5

        with allure.step("Retrying after the first run finishes trains on both batches"):
            assert await slow_validator.train_baseline("homepage", baseline_screenshots) == 2
            assert slow_validator.registry.get("homepage", 2).sample_count == 10

    @allure.story("Reject")
    @allure.title("Different baselines train in parallel")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P2
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_independent_baselines(self, slow_validator, baseline_screenshots):
        versions = await asyncio.gather(
            slow_validator.train_baseline("homepage", baseline_screenshots),
            slow_validator.train_baseline("checkout", baseline_screenshots),
        )

        assert versions == [1, 1]
        assert await slow_validator.list_baselines() == ["checkout", "homepage"]

    @allure.story("Reject")
    @allure.title("Validators sharing a store also share training exclusivity")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P1
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_exclusivity_across_validators(self, make_validator, baseline_screenshots):
        first = await make_validator(trainer=SlowTrainer(delay=0.5))
        second = await make_validator(trainer=SlowTrainer(delay=0.5))
        assert first.training_guard is not second.training_guard

        outcomes = await asyncio.gather(
            first.train_baseline("homepage", baseline_screenshots),
            second.train_baseline("homepage", baseline_screenshots),
            return_exceptions=True,
        )

        assert [o for o in outcomes if isinstance(o, int)] == [1]
        assert sum(isinstance(o, TrainingInProgressError) for o in outcomes) == 1
        assert await second.list_baseline_versions("homepage") == [1]
        assert second.corpus_store.count("homepage") == 5

    @allure.story("Queue")
    @allure.title("Queued training runs publish one version each")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P1
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_queue_policy(self, make_validator, baseline_screenshots):
        validator = await make_validator(trainer=SlowTrainer(delay=0.3), training_policy="queue")

        versions = await asyncio.gather(
            validator.train_baseline("homepage", baseline_screenshots),
            validator.train_baseline("homepage", baseline_screenshots),
        )

        assert sorted(versions) == [1, 2]
        assert await validator.list_baseline_versions("homepage") == [1, 2]
        assert validator.registry.get("homepage", 2).sample_count == 10

    @allure.story("Queue")
    @allure.title("A queued run gives up when its timeout expires")
    @allure.severity(allure.severity_level.NORMAL)
    @pytest.mark.P2
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_queue_timeout(self, make_validator, baseline_screenshots):
        validator = await make_validator(trainer=SlowTrainer(delay=0.5), training_policy="queue")

        outcomes = await asyncio.gather(
            validator.train_baseline("homepage", baseline_screenshots),
            validator.train_baseline("homepage", baseline_screenshots, timeout=0.3),
            return_exceptions=True,
        )

        assert outcomes[0] == 1
        assert isinstance(outcomes[1], ValidationTimeoutError)
        assert await validator.list_baseline_versions("homepage") == [1]
        assert validator.corpus_store.count("homepage") == 5

    @allure.story("Publication")
    @allure.title("Detections during retraining see a complete model version")
    @allure.severity(allure.severity_level.CRITICAL)
    @pytest.mark.P0
    @pytest.mark.concurrency
    @pytest.mark.asyncio
    async def test_detections_during_retraining(self, make_validator, noisy_screenshots):
        validator = await make_validator(trainer=SlowTrainer(delay=0.2))
        await validator.train_baseline("homepage", noisy_screenshots[:5])
        await validator.add_samples("homepage", noisy_screenshots[5:])

        async def validate_repeatedly(count: int):
            results = []
            for seed in range(count):
                results.append(
                    await validator.validate_against_baseline(
                        "homepage", make_screenshot(noise=2, seed=100 + seed)
                    )
                )
                await asyncio.sleep(0.02)
            return results

        with allure.step("Retrain while detections run"):
            version, results = await asyncio.gather(
                validator.retrain_baseline("homepage"),
                validate_repeatedly(20),
            )

        assert version == 2
        assert {r.artifact_version for r in results} <= {1, 2}
        assert all(r.is_valid for r in results)

        after = await validator.validate_against_baseline("homepage", make_screenshot(noise=2, seed=1))
        assert after.artifact_version == 2
