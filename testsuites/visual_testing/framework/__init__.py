"""
================================================================================
Visual Testing Framework
================================================================================

Helpers shared by the visual validation test suites.

Modules:
    - screenshot_factory: Deterministic synthetic page screenshots
    - slow_components: Delayed trainer and analyzer for timing scenarios

Author: Automation Team
License: MIT
================================================================================
"""

from .screenshot_factory import Block, PageLayout, make_png, make_screenshot
from .slow_components import SlowAnalyzer, SlowTrainer

__all__ = [
    "Block",
    "PageLayout",
    "SlowAnalyzer",
    "SlowTrainer",
    "make_png",
    "make_screenshot",
]
