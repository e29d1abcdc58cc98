"""
================================================================================
Visual Tools Common Utilities
================================================================================

Logging setup shared by the pipeline, the test suites and run_tests.py.

Settings come from the ``logging`` section of config/config.yaml
(LOGGING_LEVEL, LOGGING_FILE ... in the environment). Arguments passed to
init_logger win over both.

Exports:
    - init_logger: Install the console sink and the optional rotating file sink
    - ensure_directory: Create a directory if missing

Usage:
    from visual_tools.common import init_logger

    init_logger()
    init_logger(level="DEBUG", log_file="logs/visual.log", force=True)

================================================================================
"""

import os
import sys
from typing import Optional

from loguru import logger

from visual_validation.config_loader import ConfigLoader


DEFAULT_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

_logger_initialized = False


def ensure_directory(path: str) -> str:
    """Create ``path`` (and parents) if missing. Returns ``path``."""
    os.makedirs(path, exist_ok=True)
    return path


def _add_file_sink(log_file: str, level: str, format_string: str, config: ConfigLoader) -> None:
    parent = os.path.dirname(log_file)
    if parent:
        ensure_directory(parent)
    logger.add(
        log_file,
        level=level,
        format=format_string,
        rotation=config.get("logging.rotation", "10 MB"),
        retention=config.get("logging.retention", "7 days"),
    )


def init_logger(
    level: Optional[str] = None,
    format_string: Optional[str] = None,
    log_file: Optional[str] = None,
    force: bool = False,
) -> None:
    """
    Replace loguru's default handler with the configured sinks.

    Later calls are no-ops unless ``force`` is set, so library code can call
    this freely while tests re-initialize after changing the environment.
    """
    global _logger_initialized

    if _logger_initialized and not force:
        return

    config = ConfigLoader()
    level = (level or config.get("logging.level", "INFO")).upper()
    format_string = format_string or config.get("logging.format", DEFAULT_LOG_FORMAT)
    log_file = log_file or config.get("logging.file", None)

    logger.remove()
    logger.add(sys.stderr, level=level, format=format_string, colorize=True)
    if log_file:
        _add_file_sink(log_file, level, format_string, config)

    _logger_initialized = True
    logger.debug(f"Logging at {level}" + (f", file sink {log_file}" if log_file else ""))


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "ensure_directory",
    "init_logger",
]
