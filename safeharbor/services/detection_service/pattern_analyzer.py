"""Conversation pattern analysis.

Runs the detector over the recent window of a conversation to estimate
whether distress is escalating and how urgent the situation looks.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from safeharbor.shared.models import CrisisType
from .detector import CrisisDetector

logger = logging.getLogger(__name__)


class PatternRisk(Enum):
    """Coarse conversation-level risk."""
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


RECOMMENDATIONS = {
    PatternRisk.LOW: "Continue monitoring",
    PatternRisk.MODERATE: "Proactive support recommended",
    PatternRisk.HIGH: "Immediate intervention required",
}


@dataclass(frozen=True)
class ConversationMessage:
    """One message in a conversation, oldest first."""
    content: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PatternAnalysis:
    """Result of analysing a conversation window."""
    escalating: bool
    risk_level: PatternRisk
    recommendation: str
    average_confidence: float = 0.0
    messages_analyzed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escalating": self.escalating,
            "risk_level": self.risk_level.value,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class PatternConfig:
    """Thresholds for conversation risk classification."""
    window_size: int = 5
    min_messages: int = 2
    high_threshold: float = 0.7
    moderate_threshold: float = 0.4
    max_workers: int = 5


class PatternAnalyzer:
    """Infers escalation and risk level from recent messages."""

    def __init__(
        self,
        detector: Optional[CrisisDetector] = None,
        config: Optional[PatternConfig] = None,
    ):
        """Initialize analyzer.

        Args:
            detector: Crisis detector (injected for testing)
            config: Window and threshold configuration
        """
        self.detector = detector or CrisisDetector()
        self.config = config or PatternConfig()

    def analyze_conversation(self, messages: Sequence[ConversationMessage]) -> PatternAnalysis:
        """Classify a conversation by the trend of its recent messages.

        Args:
            messages: Conversation in chronological order

        Returns:
            PatternAnalysis with escalation flag, risk level and recommendation

        Logs:
            - PATTERN_ANALYZED: After classification
        """
        if len(messages) < self.config.min_messages:
            return PatternAnalysis(
                escalating=False,
                risk_level=PatternRisk.LOW,
                recommendation=RECOMMENDATIONS[PatternRisk.LOW],
                messages_analyzed=len(messages),
            )

        window = list(messages)[-self.config.window_size:]

        # map() yields results in input order whatever order they finish in
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            detections = list(executor.map(lambda m: self.detector.detect(m.content), window))

        scores = [d.confidence for d in detections]
        average = sum(scores) / len(scores)
        escalating = len(scores) > 2 and scores[-1] > scores[0]

        if average > self.config.high_threshold or any(
            d.crisis_type == CrisisType.SUICIDE_RISK for d in detections
        ):
            risk = PatternRisk.HIGH
        elif average > self.config.moderate_threshold or escalating:
            risk = PatternRisk.MODERATE
        else:
            risk = PatternRisk.LOW

        logger.info(
            "PATTERN_ANALYZED",
            extra={
                "messages_analyzed": len(window),
                "average_confidence": round(average, 3),
                "escalating": escalating,
                "risk_level": risk.value,
            }
        )

        return PatternAnalysis(
            escalating=escalating,
            risk_level=risk,
            recommendation=RECOMMENDATIONS[risk],
            average_confidence=average,
            messages_analyzed=len(window),
        )
