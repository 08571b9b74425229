"""Crisis engine configuration and static response tables."""
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Mapping, Tuple

from safeharbor.shared.models import CrisisType, UrgencyLevel


# Hours until the follow-up check-in is due
FOLLOWUP_HOURS: Mapping[UrgencyLevel, int] = MappingProxyType({
    UrgencyLevel.IMMEDIATE: 1,
    UrgencyLevel.HIGH: 6,
    UrgencyLevel.MODERATE: 24,
    UrgencyLevel.LOW: 48,
})

# Urgency when none is supplied and detection is not confident
URGENCY_BY_TYPE: Mapping[CrisisType, UrgencyLevel] = MappingProxyType({
    CrisisType.SUICIDE_RISK: UrgencyLevel.IMMEDIATE,
    CrisisType.SELF_HARM: UrgencyLevel.HIGH,
    CrisisType.MEDICAL_EMERGENCY: UrgencyLevel.HIGH,
    CrisisType.PANIC_ATTACK: UrgencyLevel.HIGH,
    CrisisType.MELTDOWN: UrgencyLevel.MODERATE,
    CrisisType.FAMILY_CONFLICT: UrgencyLevel.MODERATE,
    CrisisType.BURNOUT: UrgencyLevel.LOW,
})

# Urgency when the description is detected with high confidence
CONFIDENT_DETECTION_URGENCY: Mapping[CrisisType, UrgencyLevel] = MappingProxyType({
    CrisisType.SUICIDE_RISK: UrgencyLevel.IMMEDIATE,
    CrisisType.SELF_HARM: UrgencyLevel.HIGH,
    CrisisType.MEDICAL_EMERGENCY: UrgencyLevel.HIGH,
})

IMMEDIATE_STEPS: Tuple[str, ...] = (
    "Call emergency helpline immediately",
    "Stay with someone you trust",
    "Remove any means of self-harm",
)

NEXT_STEPS: Mapping[CrisisType, Tuple[str, ...]] = MappingProxyType({
    CrisisType.SUICIDE_RISK: (
        "Connect with crisis counselor",
        "Create a safety plan",
        "Identify reasons for living",
    ),
    CrisisType.PANIC_ATTACK: (
        "Practice deep breathing exercises",
        "Find a quiet, safe space",
        "Use grounding techniques (5-4-3-2-1)",
    ),
    CrisisType.MELTDOWN: (
        "Reduce sensory input",
        "Use calming strategies",
        "Take a break from demands",
    ),
})

DEFAULT_NEXT_STEPS: Tuple[str, ...] = (
    "Reach out to support network",
    "Practice self-care",
    "Consider professional help",
)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class EngineConfig:
    """Incident orchestration parameters."""
    followup_hours: Mapping[UrgencyLevel, int] = field(default_factory=lambda: FOLLOWUP_HOURS)

    # Resources returned with a new incident
    immediate_resource_limit: int = 10
    resource_limit: int = 5

    # Detection confidence above which the description decides urgency
    urgency_confidence_threshold: float = 0.8

    # Roles that may see any subject's incidents
    elevated_roles: FrozenSet[str] = frozenset({"ADMIN", "MODERATOR"})

    default_country: str = "IN"

    # Moderator/follow-up notifications
    notify_stream: str = "safeharbor-crisis-notifications"
    notify_enabled: bool = True
    aws_region: str = "us-east-1"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables.

        Environment variables:
            SAFEHARBOR_DEFAULT_COUNTRY: Country for national fallbacks (default IN)
            SAFEHARBOR_NOTIFY_STREAM: Kinesis stream for notifications
            SAFEHARBOR_NOTIFY_ENABLED: Publish notifications (default true)
            AWS_REGION: AWS region (default us-east-1)
        """
        return cls(
            default_country=os.getenv("SAFEHARBOR_DEFAULT_COUNTRY", "IN"),
            notify_stream=os.getenv("SAFEHARBOR_NOTIFY_STREAM", cls.notify_stream),
            notify_enabled=_env_flag("SAFEHARBOR_NOTIFY_ENABLED", "true"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
        )

    def resource_limit_for(self, urgency: UrgencyLevel) -> int:
        if urgency == UrgencyLevel.IMMEDIATE:
            return self.immediate_resource_limit
        return self.resource_limit
