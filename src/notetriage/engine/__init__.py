"""Note processing engines.

This package provides the processing engines:
- Background dispatcher for one-way side-effect messages
- Baseline service for rule-path saves and baseline queries
- Candidate selector for the re-classification worklist
- Re-classification orchestrator with review actions and weekly summary
- Promotion detector for scratch notes
"""

from notetriage.engine.baseline import BaselineService
from notetriage.engine.candidates import Candidate, CandidateSelector
from notetriage.engine.events import BackgroundDispatcher, PromotionCheckRequested
from notetriage.engine.promotion import PromotionCheck, PromotionDetector
from notetriage.engine.reclassify import (
    ReclassifyBatchResult,
    ReclassifyEngine,
    ReclassifyItem,
    ReviewItem,
    ReviewPage,
    WeeklySummary,
    determine_status,
)

__all__ = [
    # Events
    "BackgroundDispatcher",
    "PromotionCheckRequested",
    # Baseline
    "BaselineService",
    # Candidates
    "Candidate",
    "CandidateSelector",
    # Re-classification
    "ReclassifyBatchResult",
    "ReclassifyEngine",
    "ReclassifyItem",
    "ReviewItem",
    "ReviewPage",
    "WeeklySummary",
    "determine_status",
    # Promotion
    "PromotionCheck",
    "PromotionDetector",
]
