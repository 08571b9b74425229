"""Audit Service: append-only incident audit trail.

Every incident action (creation, updates, responder connection,
follow-ups, resource access) is recorded as a hash-chained
IncidentLogEntry. Writes are best-effort and never fail the caller.

Components:
- audit_logger.py: AuditLogger (hash chain, verification)
- audit_repository.py: AuditRepository (PostgreSQL crisis_logs or memory)
"""

from .audit_logger import AuditAction, AuditLogger, GENESIS_HASH
from .audit_repository import AuditRepository

__all__ = [
    "AuditAction",
    "AuditLogger",
    "AuditRepository",
    "GENESIS_HASH",
]
