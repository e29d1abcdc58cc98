"""
Repository-level pytest configuration.

Keeps local and CI runs predictable:
  - Baseline storage goes to a per-session temporary directory, never into
    the working tree
  - loguru is configured from the logging section once per session
  - The configuration singleton is rebuilt for every test so environment
    overrides set by one test do not leak into the next
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Generator

import pytest

from visual_tools.common import init_logger
from visual_validation.config_loader import ConfigLoader


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return repo root path."""
    return Path(__file__).parent


@pytest.fixture(scope="session", autouse=True)
def _safe_env_defaults(tmp_path_factory) -> Generator[None, None, None]:
    """
    Set environment defaults if not already provided by the user/CI.
    """
    defaults = {
        "STORAGE_ROOT": str(tmp_path_factory.mktemp("visual_baselines")),
        "LOGGING_LEVEL": "DEBUG",
    }

    for k, v in defaults.items():
        os.environ.setdefault(k, v)

    ConfigLoader.reset()
    init_logger(force=True)

    yield


@pytest.fixture(autouse=True)
def _fresh_config() -> Generator[None, None, None]:
    ConfigLoader.reset()
    yield
    ConfigLoader.reset()
