"""
================================================================================
Visual Tools
================================================================================

Support utilities around the visual validation pipeline.

Modules:
    - common: Logging setup and small shared helpers
    - report_tools: Allure attachments for verdicts, overlays and heatmaps

Example:
    from visual_tools.common import init_logger
    from visual_tools.report_tools.allure_utils import attach_validation_result

    init_logger()
    result = await validator.validate_against_baseline("homepage", screenshot)
    attach_validation_result(result, screenshot.image_bytes)

================================================================================
"""

__version__ = "1.0.0"

__all__ = [
    "common",
    "report_tools",
]
