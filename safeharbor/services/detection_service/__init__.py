"""Detection Service: keyword crisis detection and conversation analysis.

Components:
- config.py: Immutable keyword taxonomy and scoring configuration
- detector.py: CrisisDetector (single text -> DetectionResult)
- pattern_analyzer.py: PatternAnalyzer (conversation window -> risk trend)

Usage:
    from safeharbor.services.detection_service import CrisisDetector
    result = CrisisDetector().detect("I can't breathe, panic attack")
"""

from .config import (
    CRISIS_TAXONOMY,
    DetectionConfig,
    KeywordTier,
    crisis_type_from_string,
)
from .detector import CrisisDetector, DetectionResult, ReferenceCheck
from .pattern_analyzer import (
    ConversationMessage,
    PatternAnalysis,
    PatternAnalyzer,
    PatternConfig,
    PatternRisk,
)

__all__ = [
    "CRISIS_TAXONOMY",
    "DetectionConfig",
    "KeywordTier",
    "crisis_type_from_string",
    "CrisisDetector",
    "DetectionResult",
    "ReferenceCheck",
    "ConversationMessage",
    "PatternAnalysis",
    "PatternAnalyzer",
    "PatternConfig",
    "PatternRisk",
]
