"""
================================================================================
Test Suites Pytest Configuration
================================================================================

Markers shared by the unit and visual validation suites, suite markers added
from the directory a test lives in, and a report header describing the
pipeline configuration the run uses.

================================================================================
"""

import os

import pytest

from visual_validation import __version__
from visual_validation.config_loader import ConfigLoader


MARKERS = {
    # Priority
    "P0": "Critical priority - must pass before a baseline is trusted",
    "P1": "High priority - core training and detection behaviour",
    "P2": "Medium priority - edge cases and secondary features",
    "P3": "Low priority - extensive validation",
    # Test type
    "smoke": "Quick verification tests",
    "regression": "Full regression test suite",
    "unit": "Single-module tests",
    # Domain
    "visual": "End-to-end visual validation scenarios",
    "concurrency": "Tests exercising concurrent training and detection",
}

# Directory name under testsuites/ -> marker added to every test inside it
SUITE_MARKERS = {
    "unit": "unit",
    "visual_testing": "visual",
}


def pytest_configure(config):
    """Register the project-wide markers."""
    for name, description in MARKERS.items():
        config.addinivalue_line("markers", f"{name}: {description}")


def pytest_collection_modifyitems(config, items):
    """Mark tests by suite directory so `-m unit` / `-m visual` select whole suites."""
    for item in items:
        for directory, marker in SUITE_MARKERS.items():
            if directory in item.path.parts:
                item.add_marker(getattr(pytest.mark, marker))


def pytest_report_header(config):
    """Describe the pipeline configuration the run uses."""
    loader = ConfigLoader()
    return [
        "",
        "=" * 60,
        f"ML Visual Validation Test Suite (visual_validation {__version__})",
        f"config: {loader.config_path}",
        f"storage: {os.environ.get('STORAGE_BACKEND', 'memory + filesystem')}",
        f"heatmaps: {'on' if loader.get('reporting.attach_heatmap', False) else 'off'}",
        "=" * 60,
        "",
    ]
