"""Responder dispatch and lifecycle.

Finds the least busy eligible responder for an incident and reserves a
slot on them. Also owns registration, training, approval and
availability, the administrative steps a responder goes through before
they can be dispatched.
"""
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from safeharbor.shared.errors import ConflictError, ValidationError
from safeharbor.shared.models import CrisisType, Responder, parse_location
from safeharbor.shared.utils import Clock, SystemClock, hash_pii
from .repository import ConnectionRepository, ResponderFilters, ResponderRepository

logger = logging.getLogger(__name__)


REGISTRATION_ROLES: FrozenSet[str] = frozenset({"THERAPIST", "EDUCATOR", "MODERATOR", "ADMIN"})


@dataclass(frozen=True)
class DispatchConfig:
    """Dispatch parameters."""
    # Ranked candidates tried per dispatch
    candidate_window: int = 5

    # Caseload given to newly registered responders
    default_max_cases: int = 3

    allowed_roles: FrozenSet[str] = REGISTRATION_ROLES

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        """Create config from environment variables.

        Environment variables:
            DISPATCH_CANDIDATE_WINDOW: Candidates tried per dispatch (default 5)
            DISPATCH_DEFAULT_MAX_CASES: Default caseload (default 3)
        """
        return cls(
            candidate_window=int(os.getenv("DISPATCH_CANDIDATE_WINDOW", "5")),
            default_max_cases=int(os.getenv("DISPATCH_DEFAULT_MAX_CASES", "3")),
        )


@dataclass(frozen=True)
class ResponderProfile:
    """What a subject supplies when registering as a responder."""
    specializations: FrozenSet[CrisisType] = frozenset()
    languages: FrozenSet[str] = frozenset({"en"})
    region: Optional[str] = None
    city: Optional[str] = None
    max_concurrent_cases: Optional[int] = None
    certifications: Tuple[str, ...] = ()


class ResponderDispatcher:
    """Reserves and releases responder capacity.

    Reservation is a compare-and-increment in the store, so two
    dispatches racing for a responder's last slot cannot both win.
    """

    def __init__(
        self,
        repository: Optional[ResponderRepository] = None,
        connections: Optional[ConnectionRepository] = None,
        clock: Optional[Clock] = None,
        config: Optional[DispatchConfig] = None,
    ):
        self.repository = repository or ResponderRepository()
        self.connections = connections or ConnectionRepository()
        self.clock = clock or SystemClock()
        self.config = config or DispatchConfig()

        logger.info(
            "RESPONDER_DISPATCHER_INITIALIZED",
            extra={"candidate_window": self.config.candidate_window}
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def find_available(
        self,
        crisis_type: CrisisType,
        location: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Optional[Responder]:
        """Find and reserve the best available responder.

        Candidates are ranked least busy first, then by rating, then by
        experience. The top candidate is reserved; if another dispatch
        took its last slot in the meantime, the next candidate is tried.

        Args:
            crisis_type: Crisis the responder must specialize in
            location: Optional "city, region"; every given part must match
            language: Optional language the responder must speak

        Returns:
            The reserved responder (count already incremented), or None
            when nobody matches. None is an expected outcome.

        Logs:
            - RESPONDER_RESERVED: Slot reserved
            - RESPONDER_NOT_AVAILABLE: No eligible responder (warning)
        """
        city, region = parse_location(location)
        candidates = self.repository.find_candidates(
            crisis_type,
            city=city,
            region=region,
            language=language,
            limit=self.config.candidate_window,
        )

        for candidate in candidates:
            reserved = self.repository.try_reserve(candidate.id, crisis_type)
            if reserved is None:
                logger.debug(
                    "RESPONDER_RESERVE_DECLINED",
                    extra={"responder_id": candidate.id}
                )
                continue
            logger.info(
                "RESPONDER_RESERVED",
                extra={
                    "responder_id": reserved.id,
                    "crisis_type": crisis_type.value,
                    "current_case_count": reserved.current_case_count,
                    "max_concurrent_cases": reserved.max_concurrent_cases,
                }
            )
            return reserved

        logger.warning(
            "RESPONDER_NOT_AVAILABLE",
            extra={
                "crisis_type": crisis_type.value,
                "city": city,
                "region": region,
                "language": language,
                "candidates_tried": len(candidates),
            }
        )
        return None

    def release(self, responder_id: str) -> Responder:
        """Give back one reserved slot; never drops below zero.

        Raises:
            NotFoundError: If the responder does not exist
        """
        responder = self.repository.release(responder_id)
        logger.info(
            "RESPONDER_RELEASED",
            extra={
                "responder_id": responder_id,
                "current_case_count": responder.current_case_count,
            }
        )
        return responder

    def apply_rating(self, responder_id: str, rating: int) -> Optional[Responder]:
        """Fold a connection rating into the responder's average.

        A missing responder is logged and skipped; the rating stays on
        the connection either way.
        """
        responder = self.repository.apply_rating(responder_id, rating)
        if responder is None:
            logger.warning(
                "RESPONDER_RATING_SKIPPED",
                extra={"responder_id": responder_id, "reason": "not_found"}
            )
            return None
        logger.info(
            "RESPONDER_RATED",
            extra={
                "responder_id": responder_id,
                "average_rating": responder.average_rating,
                "total_cases_handled": responder.total_cases_handled,
            }
        )
        return responder

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(
        self,
        subject_id: str,
        role: str,
        profile: Optional[ResponderProfile] = None,
    ) -> Responder:
        """Register a subject as a responder.

        New responders start inactive, unavailable and untrained; they
        need admin approval and completed training before going online.

        Raises:
            ConflictError: If the subject is already registered
            ValidationError: If the role may not register
        """
        subject_hash = hash_pii(subject_id)
        if self.repository.find_by_subject(subject_id) is not None:
            raise ConflictError("Subject is already registered as a responder")

        if (role or "").upper() not in self.config.allowed_roles:
            logger.warning(
                "RESPONDER_REGISTRATION_REJECTED",
                extra={"subject_id_hash": subject_hash, "role": role}
            )
            raise ValidationError("Only verified professionals can register as responders")

        profile = profile or ResponderProfile()
        responder = Responder(
            id=f"resp_{uuid.uuid4().hex[:12]}",
            subject_id=subject_id,
            specializations=frozenset(profile.specializations),
            languages=frozenset(profile.languages),
            region=profile.region,
            city=profile.city,
            max_concurrent_cases=profile.max_concurrent_cases or self.config.default_max_cases,
            certifications=tuple(profile.certifications),
            created_at=self.clock.now(),
        )
        # The store enforces subject uniqueness against concurrent registrations
        responder = self.repository.insert(responder)

        logger.info(
            "RESPONDER_REGISTERED",
            extra={
                "responder_id": responder.id,
                "subject_id_hash": subject_hash,
                "specializations": sorted(t.value for t in responder.specializations),
            }
        )
        return responder

    def complete_training(self, subject_id: str, certificate_ids: Iterable[str] = ()) -> Responder:
        """Mark a responder trained and record their certificates.

        Raises:
            NotFoundError: If the subject is not a responder
        """
        responder = self.repository.get_by_subject(subject_id)
        updated = self.repository.complete_training(responder.id, tuple(certificate_ids))
        logger.info(
            "RESPONDER_TRAINING_COMPLETED",
            extra={
                "responder_id": responder.id,
                "certification_count": len(updated.certifications),
            }
        )
        return updated

    def approve(self, responder_id: str, approved_by: str) -> Responder:
        """Activate a responder.

        Raises:
            NotFoundError: If the responder does not exist
        """
        updated = self.repository.update_fields(
            responder_id,
            is_active=True,
            approved_at=self.clock.now(),
            approved_by=approved_by,
        )
        logger.info(
            "RESPONDER_APPROVED",
            extra={"responder_id": responder_id, "approved_by": approved_by}
        )
        return updated

    def update_availability(
        self,
        subject_id: str,
        is_available: bool,
        available_from: Optional[datetime] = None,
        available_till: Optional[datetime] = None,
    ) -> Responder:
        """Toggle a responder online or offline.

        Going offline resets current_case_count to 0, dropping any
        reservations still held.

        Raises:
            NotFoundError: If the subject is not a responder
            ValidationError: Going online before training and approval
        """
        responder = self.repository.get_by_subject(subject_id)
        if is_available and not (responder.training_completed and responder.is_active):
            raise ValidationError(
                "Responder must complete training and be approved before going online"
            )

        updated = self.repository.set_availability(
            responder.id, is_available, available_from, available_till
        )
        logger.info(
            "RESPONDER_AVAILABILITY_CHANGED",
            extra={
                "responder_id": responder.id,
                "is_available": is_available,
                "dropped_cases": 0 if is_available else responder.current_case_count,
            }
        )
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_profile(self, subject_id: str) -> Dict[str, Any]:
        """Responder, its 10 most recent connections and case statistics.

        Raises:
            NotFoundError: If the subject is not a responder
        """
        responder = self.repository.get_by_subject(subject_id)
        recent = self.connections.list_for_responder(responder.id, limit=10)
        stats = self.connections.responder_stats(responder.id, self.clock.now())
        return {
            "responder": responder.to_dict(),
            "recent_connections": [c.to_dict() for c in recent],
            "stats": stats,
        }

    def list_responders(self, filters: Optional[ResponderFilters] = None) -> List[Responder]:
        return self.repository.list_responders(filters)
