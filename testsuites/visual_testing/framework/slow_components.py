"""
================================================================================
Slow Pipeline Components
================================================================================

Pipeline stages slowed down by a fixed delay, for scenarios that need
training runs or detections to overlap or to overrun their timeouts.

Usage:
    validator = VisualValidator(storage, trainer=SlowTrainer(delay=0.5))

Author: Automation Team
License: MIT
================================================================================
"""

import time
from typing import Optional

from visual_validation import AnalysisPolicy, AnomalyAnalyzer, ModelTrainer, TrainingParameters


class SlowTrainer(ModelTrainer):
    """Trainer that holds the training slot for ``delay`` seconds."""

    def __init__(self, delay: float = 0.5, parameters: Optional[TrainingParameters] = None):
        super().__init__(parameters)
        self.delay = delay

    def train(self, corpus, parameters=None):
        time.sleep(self.delay)
        return super().train(corpus, parameters)


class SlowAnalyzer(AnomalyAnalyzer):
    """Analyzer that takes ``delay`` seconds per verdict."""

    def __init__(self, delay: float = 0.5, policy: Optional[AnalysisPolicy] = None):
        super().__init__(policy)
        self.delay = delay

    def analyze(self, output, policy=None):
        time.sleep(self.delay)
        return super().analyze(output, policy)
