"""Keyword-based crisis detector.

Scores free text against the crisis taxonomy. HIGH and MEDIUM keywords
match on word boundaries ("cut" never matches "cute"); CONTEXTUAL
keywords match as plain substrings.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from safeharbor.shared.models import CrisisType
from safeharbor.shared.utils import hash_text_for_audit
from .config import (
    CRISIS_TAXONOMY,
    DEFAULT_SUGGESTED_ACTION,
    EMERGENCY_NUMBERS,
    HELPLINE_KEYWORDS,
    SUGGESTED_ACTIONS,
    CategoryKeywords,
    DetectionConfig,
    KeywordTier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of scanning one piece of text.

    Immutable - results cannot be modified after creation.
    """
    detected: bool
    crisis_type: Optional[CrisisType] = None
    matched_keywords: Tuple[str, ...] = ()
    confidence: float = 0.0
    priority: Optional[KeywordTier] = None
    suggested_action: Optional[str] = None
    show_resources: bool = False

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "detected": self.detected,
            "crisis_type": self.crisis_type.value if self.crisis_type else None,
            "matched_keywords": list(self.matched_keywords),
            "confidence": self.confidence,
            "suggested_action": self.suggested_action,
            "show_resources": self.show_resources,
        }


NOT_DETECTED = DetectionResult(detected=False)


@dataclass(frozen=True)
class ReferenceCheck:
    """Whether text mentions emergency numbers or helplines."""
    has_emergency_numbers: bool
    has_helpline_references: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_emergency_numbers": self.has_emergency_numbers,
            "has_helpline_references": self.has_helpline_references,
        }


@dataclass
class _CategoryScore:
    crisis_type: CrisisType
    score: int = 0
    priority: KeywordTier = KeywordTier.CONTEXTUAL
    keywords: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _CompiledCategory:
    crisis_type: CrisisType
    high: Tuple[Tuple[str, re.Pattern], ...]
    medium: Tuple[Tuple[str, re.Pattern], ...]
    contextual: Tuple[str, ...]


class CrisisDetector:
    """Deterministic crisis detector.

    Pure apart from a warning log on detection; safe to share between
    threads.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        taxonomy: Tuple[CategoryKeywords, ...] = CRISIS_TAXONOMY,
    ):
        """Initialize detector.

        Args:
            config: Scoring configuration
            taxonomy: Ordered keyword categories (declaration order breaks ties)
        """
        self.config = config or DetectionConfig()

        # Pre-compile regex patterns for performance
        self._categories = tuple(self._compile_category(c) for c in taxonomy)

        logger.info(
            "CRISIS_DETECTOR_INITIALIZED",
            extra={
                "taxonomy_version": self.config.taxonomy_version,
                "category_count": len(self._categories),
            }
        )

    @staticmethod
    def _compile_pattern(keyword: str) -> re.Pattern:
        return re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)

    def _compile_category(self, category: CategoryKeywords) -> _CompiledCategory:
        return _CompiledCategory(
            crisis_type=category.crisis_type,
            high=tuple((k, self._compile_pattern(k)) for k in category.high),
            medium=tuple((k, self._compile_pattern(k)) for k in category.medium),
            contextual=tuple(k.lower() for k in category.contextual),
        )

    def detect(self, text: Optional[str]) -> DetectionResult:
        """Score text against every crisis category.

        Args:
            text: Free text from the at-risk user

        Returns:
            DetectionResult for the highest-scoring category, or a
            not-detected result when nothing matched

        Logs:
            - CRISIS_DETECTED: warning level, when a category matched
        """
        if not text or not text.strip():
            return NOT_DETECTED

        lowered = text.lower()
        best: Optional[_CategoryScore] = None

        for category in self._categories:
            scored = self._score_category(category, lowered)
            if not scored.keywords:
                continue
            # Strict comparison keeps the earlier category on a tie
            if best is None or scored.score > best.score:
                best = scored

        if best is None:
            return NOT_DETECTED

        confidence = min(best.score / self.config.confidence_divisor, 1.0)
        suggested_action = SUGGESTED_ACTIONS.get(best.crisis_type, {}).get(
            best.priority, DEFAULT_SUGGESTED_ACTION
        )
        show_resources = (
            best.priority == KeywordTier.HIGH
            or confidence > self.config.show_resources_threshold
        )

        logger.warning(
            "CRISIS_DETECTED",
            extra={
                "crisis_type": best.crisis_type.value,
                "matched_keywords": best.keywords,
                "confidence": confidence,
                "priority": best.priority.value,
                "text_hash": hash_text_for_audit(text),
                "taxonomy_version": self.config.taxonomy_version,
            }
        )

        return DetectionResult(
            detected=True,
            crisis_type=best.crisis_type,
            matched_keywords=tuple(best.keywords),
            confidence=confidence,
            priority=best.priority,
            suggested_action=suggested_action,
            show_resources=show_resources,
        )

    def _score_category(self, category: _CompiledCategory, lowered: str) -> _CategoryScore:
        result = _CategoryScore(crisis_type=category.crisis_type)

        for keyword, pattern in category.high:
            if pattern.search(lowered):
                result.keywords.append(keyword)
                result.score += self.config.high_weight
                result.priority = KeywordTier.HIGH

        for keyword, pattern in category.medium:
            if pattern.search(lowered):
                result.keywords.append(keyword)
                result.score += self.config.medium_weight
                if result.priority != KeywordTier.HIGH:
                    result.priority = KeywordTier.MEDIUM

        for keyword in category.contextual:
            if keyword in lowered:
                result.keywords.append(keyword)
                result.score += self.config.contextual_weight

        return result

    def detect_references(self, text: Optional[str]) -> ReferenceCheck:
        """Check text for emergency numbers and helpline mentions."""
        if not text:
            return ReferenceCheck(False, False)
        lowered = text.lower()
        return ReferenceCheck(
            has_emergency_numbers=any(number in text for number in EMERGENCY_NUMBERS),
            has_helpline_references=any(k in lowered for k in HELPLINE_KEYWORDS),
        )
