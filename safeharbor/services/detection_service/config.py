"""Detection configuration and the crisis keyword taxonomy.

The taxonomy is read-only process-wide data. Category order matters:
when two categories score the same, the one declared first wins.
"""
import os
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from safeharbor.shared.models import CrisisType


class KeywordTier(Enum):
    """Keyword weight buckets. CONTEXTUAL matches as a plain substring."""
    HIGH = "high"
    MEDIUM = "medium"
    CONTEXTUAL = "contextual"


@dataclass(frozen=True)
class CategoryKeywords:
    """Keyword lists for one crisis category."""
    crisis_type: CrisisType
    high: Tuple[str, ...]
    medium: Tuple[str, ...]
    contextual: Tuple[str, ...]


@dataclass(frozen=True)
class DetectionConfig:
    """Scoring parameters for the detector."""
    high_weight: int = 3
    medium_weight: int = 2
    contextual_weight: int = 1

    # confidence = min(score / divisor, 1)
    confidence_divisor: float = 10.0

    # Resources are shown for HIGH-tier hits or confidence above this
    show_resources_threshold: float = 0.5

    # Version tracking for audit trail
    taxonomy_version: str = "2026.10.01"

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        """Create config from environment variables.

        Environment variables:
            DETECTION_TAXONOMY_VERSION: Taxonomy version tag
            DETECTION_SHOW_RESOURCES_THRESHOLD: Confidence threshold (default 0.5)
        """
        return cls(
            taxonomy_version=os.getenv("DETECTION_TAXONOMY_VERSION", cls.taxonomy_version),
            show_resources_threshold=float(
                os.getenv("DETECTION_SHOW_RESOURCES_THRESHOLD", "0.5")
            ),
        )


CRISIS_TAXONOMY: Tuple[CategoryKeywords, ...] = (
    CategoryKeywords(
        crisis_type=CrisisType.SUICIDE_RISK,
        high=(
            "kill myself", "end my life", "suicide", "want to die",
            "better off dead", "no reason to live", "ending it all",
            "take my life", "not worth living", "goodbye forever",
        ),
        medium=(
            "cant go on", "no point", "wish i was dead", "tired of living",
            "dont want to be here", "life is meaningless", "want to disappear",
        ),
        contextual=("hopeless", "trapped", "burden", "alone", "nobody cares"),
    ),
    CategoryKeywords(
        crisis_type=CrisisType.SELF_HARM,
        high=(
            "cut myself", "hurt myself", "self harm", "self-harm",
            "burning myself", "hitting myself", "punish myself",
            "deserve pain", "need to bleed",
        ),
        medium=(
            "scratch myself", "bite myself", "pull my hair",
            "starving myself", "making myself sick",
        ),
        contextual=("numb", "feel something", "release", "control"),
    ),
    CategoryKeywords(
        crisis_type=CrisisType.PANIC_ATTACK,
        high=(
            "cant breathe", "panic attack", "heart racing",
            "going to die", "losing control", "chest pain",
            "cant calm down", "hyperventilating", "going crazy",
        ),
        medium=(
            "freaking out", "anxiety attack", "shaking",
            "dizzy", "sweating", "trembling",
        ),
        contextual=("overwhelmed", "scared", "terrified", "paralyzed"),
    ),
    CategoryKeywords(
        crisis_type=CrisisType.MELTDOWN,
        high=(
            "meltdown", "shutting down", "sensory overload",
            "cant cope", "too much", "breaking down",
            "losing it", "falling apart", "cant handle",
        ),
        medium=(
            "overwhelmed", "overstimulated", "need quiet",
            "too loud", "too bright", "cant think",
        ),
        contextual=("autism", "adhd", "sensory", "stimming"),
    ),
    CategoryKeywords(
        crisis_type=CrisisType.MEDICAL_EMERGENCY,
        high=(
            "call ambulance", "emergency", "urgent help",
            "bleeding heavily", "unconscious", "not breathing",
            "severe pain", "allergic reaction", "overdose",
        ),
        medium=(
            "chest pain", "difficulty breathing", "severe headache",
            "vision loss", "numbness", "confusion",
        ),
        contextual=("hospital", "doctor", "medical", "102", "108"),
    ),
    CategoryKeywords(
        crisis_type=CrisisType.FAMILY_CONFLICT,
        high=(
            "domestic violence", "being abused", "hit me",
            "threatened me", "kicked out", "running away",
            "unsafe at home", "parent hitting",
        ),
        medium=(
            "family fight", "parents fighting", "divorce",
            "custody", "family crisis", "home conflict",
        ),
        contextual=("argue", "yelling", "scared", "hiding"),
    ),
    CategoryKeywords(
        crisis_type=CrisisType.BURNOUT,
        high=(
            "complete burnout", "cant continue", "giving up",
            "exhausted", "nothing left", "breaking point",
        ),
        medium=(
            "burned out", "overwhelmed", "too tired",
            "cant focus", "no energy", "drained",
        ),
        contextual=("work", "caregiver", "stress", "pressure"),
    ),
)


_SUGGESTED_ACTIONS = {
    CrisisType.SUICIDE_RISK: {
        KeywordTier.HIGH: "Immediate professional help required. Connect to crisis helpline.",
        KeywordTier.MEDIUM: "Reach out for support. Crisis resources available.",
        KeywordTier.CONTEXTUAL: "Consider talking to someone. Support is available.",
    },
    CrisisType.SELF_HARM: {
        KeywordTier.HIGH: "Seek immediate support. Crisis counselor available.",
        KeywordTier.MEDIUM: "Coping strategies and support available.",
        KeywordTier.CONTEXTUAL: "Healthy coping resources available.",
    },
    CrisisType.PANIC_ATTACK: {
        KeywordTier.HIGH: "Immediate calming support available.",
        KeywordTier.MEDIUM: "Breathing exercises and support available.",
        KeywordTier.CONTEXTUAL: "Anxiety management resources available.",
    },
    CrisisType.MELTDOWN: {
        KeywordTier.HIGH: "Sensory support strategies available.",
        KeywordTier.MEDIUM: "Calming techniques and quiet space needed.",
        KeywordTier.CONTEXTUAL: "Self-regulation resources available.",
    },
    CrisisType.MEDICAL_EMERGENCY: {
        KeywordTier.HIGH: "Call emergency services immediately (102/108).",
        KeywordTier.MEDIUM: "Seek medical attention promptly.",
        KeywordTier.CONTEXTUAL: "Consider medical consultation.",
    },
    CrisisType.FAMILY_CONFLICT: {
        KeywordTier.HIGH: "Safety resources and shelter information available.",
        KeywordTier.MEDIUM: "Family crisis support available.",
        KeywordTier.CONTEXTUAL: "Conflict resolution resources available.",
    },
    CrisisType.BURNOUT: {
        KeywordTier.HIGH: "Immediate stress relief support available.",
        KeywordTier.MEDIUM: "Burnout recovery resources available.",
        KeywordTier.CONTEXTUAL: "Self-care strategies available.",
    },
}

# (crisis type x tier) -> message, read-only
SUGGESTED_ACTIONS: Mapping[CrisisType, Mapping[KeywordTier, str]] = MappingProxyType({
    crisis_type: MappingProxyType(actions)
    for crisis_type, actions in _SUGGESTED_ACTIONS.items()
})

DEFAULT_SUGGESTED_ACTION = "Support resources available."

EMERGENCY_NUMBERS: Tuple[str, ...] = ("102", "108", "1098", "1091", "100")

HELPLINE_KEYWORDS: Tuple[str, ...] = ("helpline", "hotline", "crisis line", "support line")

# Short names accepted by crisis_type_from_string()
CRISIS_TYPE_ALIASES: Mapping[str, CrisisType] = MappingProxyType({
    "suicide": CrisisType.SUICIDE_RISK,
    "self_harm": CrisisType.SELF_HARM,
    "panic": CrisisType.PANIC_ATTACK,
    "meltdown": CrisisType.MELTDOWN,
    "medical": CrisisType.MEDICAL_EMERGENCY,
    "family": CrisisType.FAMILY_CONFLICT,
    "burnout": CrisisType.BURNOUT,
})


def crisis_type_from_string(value: str) -> Optional[CrisisType]:
    """Resolve a short crisis name ("suicide", "panic", ...) to a CrisisType.

    Full enum names ("SUICIDE_RISK") are accepted as well.

    Returns:
        The matching CrisisType, or None for an unknown name
    """
    if not value:
        return None
    key = value.strip().lower()
    if key in CRISIS_TYPE_ALIASES:
        return CRISIS_TYPE_ALIASES[key]
    try:
        return CrisisType(key.upper())
    except ValueError:
        return None
