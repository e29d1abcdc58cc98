"""
================================================================================
Visual Validation Errors
================================================================================

Typed failures surfaced by the pipeline. Every error propagates to the caller
unchanged; a missing model or baseline is never turned into a verdict.

Author: Automation Team
License: MIT
================================================================================
"""

from __future__ import annotations


class VisualValidationError(Exception):
    """Base exception for visual validation errors."""
    pass


class ConfigurationError(VisualValidationError):
    """Raised when configuration loading or access fails."""
    pass


class StorageError(VisualValidationError):
    """Raised when the blob storage cannot read or write a key."""
    pass


class InvalidImageError(VisualValidationError):
    """Raised for malformed or empty captures. The caller must re-capture."""
    pass


class BaselineNotFoundError(VisualValidationError):
    """Raised when loading the corpus of a baseline that was never created."""

    def __init__(self, baseline: str) -> None:
        self.baseline = baseline
        super().__init__(f"Baseline not found: '{baseline}'")


class InsufficientDataError(VisualValidationError):
    """Raised when a corpus is too small to train on."""

    def __init__(self, baseline: str, available: int, required: int) -> None:
        self.baseline = baseline
        self.available = available
        self.required = required
        super().__init__(
            f"Baseline '{baseline}' has {available} sample(s), "
            f"at least {required} required for training"
        )


class ModelNotFoundError(VisualValidationError):
    """Raised when no artifact exists for a baseline (or a pinned version)."""

    def __init__(self, baseline: str, version: int = None) -> None:
        self.baseline = baseline
        self.version = version
        if version is None:
            message = f"No model published for baseline '{baseline}'"
        else:
            message = f"Model version {version} not found for baseline '{baseline}'"
        super().__init__(message)


class ModelMismatchError(VisualValidationError):
    """Raised when an image is incompatible with the artifact it is scored against."""
    pass


class TrainingInProgressError(VisualValidationError):
    """Raised when training is requested while the baseline is already training."""

    def __init__(self, baseline: str) -> None:
        self.baseline = baseline
        super().__init__(f"Training already in progress for baseline '{baseline}'")


class ValidationTimeoutError(VisualValidationError, TimeoutError):
    """Raised when training or detection exceeds its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} exceeded deadline of {timeout:.2f}s")


__all__ = [
    "VisualValidationError",
    "ConfigurationError",
    "StorageError",
    "InvalidImageError",
    "BaselineNotFoundError",
    "InsufficientDataError",
    "ModelNotFoundError",
    "ModelMismatchError",
    "TrainingInProgressError",
    "ValidationTimeoutError",
]
