"""Moderator and follow-up notifications.

Notifications go to a Kinesis stream consumed by the alerting side
(email/SMS/push). Publishing is fire-and-forget: a failure is logged at
CRITICAL with the full payload for manual processing and never raised.
"""
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import boto3

from safeharbor.shared.models import Incident
from safeharbor.shared.utils import hash_pii

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    """Immutable notification published to the stream."""
    event_id: str
    event_type: str
    incident_id: str
    subject_id_hash: str
    crisis_type: str
    urgency_level: str
    status: str
    followup_deadline: Optional[datetime] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_kinesis_payload(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat() + "Z",
            "source": "crisis-engine",
            "data": {
                "incident_id": self.incident_id,
                "subject_id_hash": self.subject_id_hash,
                "crisis_type": self.crisis_type,
                "urgency_level": self.urgency_level,
                "status": self.status,
                "followup_deadline": (
                    self.followup_deadline.isoformat() if self.followup_deadline else None
                ),
            },
        }


class IncidentNotifier:
    """Publishes incident notifications to Kinesis.

    Failure Handling:
        - Never raises; returns False instead
        - Unavailable client or failed put is logged CRITICAL with payload
    """

    MODERATOR_ALERT = "crisis.incident.moderator_alert"
    FOLLOWUP_DUE = "crisis.incident.followup_due"

    def __init__(
        self,
        stream_name: str = "safeharbor-crisis-notifications",
        enabled: bool = True,
        region: Optional[str] = None,
    ):
        """Initialize notifier.

        Args:
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None

        logger.info(
            "INCIDENT_NOTIFIER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                self._kinesis_client = boto3.client("kinesis", region_name=self.region)
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def notify_moderators(self, incident: Incident) -> bool:
        """Alert moderators about an IMMEDIATE or HIGH incident."""
        logger.warning(
            "MODERATOR_ATTENTION_REQUIRED",
            extra={
                "incident_id": incident.id,
                "crisis_type": incident.crisis_type.value,
                "urgency_level": incident.urgency_level.value,
            }
        )
        return self._publish(self.MODERATOR_ALERT, incident)

    def notify_followup(self, incident: Incident) -> bool:
        """Ask the subject's support team to check in."""
        logger.info(
            "FOLLOWUP_NOTIFICATION_SENDING",
            extra={
                "incident_id": incident.id,
                "subject_id_hash": hash_pii(incident.subject_id),
            }
        )
        return self._publish(self.FOLLOWUP_DUE, incident)

    def _publish(self, event_type: str, incident: Incident) -> bool:
        """Put one event on the stream.

        Returns:
            True if published successfully, False otherwise
        """
        event = NotificationEvent(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            incident_id=incident.id,
            subject_id_hash=hash_pii(incident.subject_id),
            crisis_type=incident.crisis_type.value,
            urgency_level=incident.urgency_level.value,
            status=incident.status.value,
            followup_deadline=incident.followup_deadline,
        )

        if not self.enabled:
            logger.info(
                "NOTIFICATION_PUBLISH_SKIPPED",
                extra={
                    "event_id": event.event_id,
                    "incident_id": incident.id,
                    "reason": "publishing_disabled",
                }
            )
            return False

        payload = event.to_kinesis_payload()

        try:
            if self.kinesis_client is None:
                # Fallback: Log event for manual processing
                logger.critical(
                    "NOTIFICATION_FALLBACK_LOG",
                    extra={
                        "event_id": event.event_id,
                        "payload": json.dumps(payload),
                        "reason": "kinesis_client_unavailable",
                        "action": "MANUAL_PROCESSING_REQUIRED",
                    }
                )
                return False

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=event.subject_id_hash,  # Same subject → same shard
            )

            logger.info(
                "NOTIFICATION_PUBLISHED",
                extra={
                    "event_id": event.event_id,
                    "event_type": event_type,
                    "incident_id": incident.id,
                    "shard_id": response.get("ShardId"),
                    "sequence_number": response.get("SequenceNumber"),
                }
            )
            return True

        except Exception as e:
            logger.critical(
                "NOTIFICATION_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "incident_id": incident.id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                    "payload": json.dumps(payload),
                }
            )
            return False
