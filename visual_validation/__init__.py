"""
================================================================================
Visual Validation
================================================================================

Learned visual regression checks for web pages: a baseline is trained from
screenshots of the page in a known-good state, and later screenshots are
scored against it with a confidence and localized anomaly regions.

Modules:
    - preprocessor: Screenshot decoding, masking, resizing, colour normalization
    - corpus_store: Durable, append-only training samples per baseline
    - trainer: Pixel-statistics envelope model training
    - registry: Versioned model artifacts with atomic publication
    - inference: Envelope distance scoring (global, DOM regions, grid cells)
    - analyzer: Confidence, anomaly clustering and verdicts
    - pipeline: VisualValidator facade
    - capture: Playwright page -> Screenshot

Author: Automation Team
License: MIT
================================================================================
"""

from .analyzer import AnalysisPolicy, AnomalyAnalyzer
from .capture import capture_screenshot
from .config_loader import ConfigLoader
from .corpus_store import TrainingCorpusStore
from .errors import (
    BaselineNotFoundError,
    ConfigurationError,
    InsufficientDataError,
    InvalidImageError,
    ModelMismatchError,
    ModelNotFoundError,
    StorageError,
    TrainingInProgressError,
    ValidationTimeoutError,
    VisualValidationError,
)
from .inference import InferenceEngine
from .models import (
    AnomalyRegion,
    BaselineState,
    ColorMode,
    DomRegion,
    ModelArtifact,
    Rect,
    Screenshot,
    Severity,
    TrainingParameters,
    ValidationResult,
)
from .pipeline import Capability, VisualValidator
from .preprocessor import ImagePreprocessor, PreprocessConfig, preprocess
from .registry import ModelRegistry
from .storage import BlobStorage, FileSystemBlobStorage, InMemoryBlobStorage, create_storage
from .trainer import ModelTrainer

__version__ = "1.0.0"

__all__ = [
    "AnalysisPolicy",
    "AnomalyAnalyzer",
    "AnomalyRegion",
    "BaselineNotFoundError",
    "BaselineState",
    "BlobStorage",
    "Capability",
    "ColorMode",
    "ConfigLoader",
    "ConfigurationError",
    "DomRegion",
    "FileSystemBlobStorage",
    "ImagePreprocessor",
    "InMemoryBlobStorage",
    "InferenceEngine",
    "InsufficientDataError",
    "InvalidImageError",
    "ModelArtifact",
    "ModelMismatchError",
    "ModelNotFoundError",
    "ModelRegistry",
    "ModelTrainer",
    "PreprocessConfig",
    "Rect",
    "Screenshot",
    "Severity",
    "StorageError",
    "TrainingCorpusStore",
    "TrainingInProgressError",
    "TrainingParameters",
    "ValidationResult",
    "ValidationTimeoutError",
    "VisualValidationError",
    "VisualValidator",
    "capture_screenshot",
    "create_storage",
    "preprocess",
]
