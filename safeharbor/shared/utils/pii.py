"""Identifier hashing for logs, partition keys and audit entries.

Raw subject and responder ids stay in the incident store. Anything that
leaves it (log lines, Kinesis partition keys, audit payloads) carries the
keyed hash instead, so all services must share one salt.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32

# Set once at startup from PII_HASH_SALT
_PII_SALT: Optional[bytes] = None


def configure_pii_salt(salt: str) -> None:
    """Install the process-wide hashing key.

    Raises:
        ValueError: salt missing or shorter than MIN_SALT_LENGTH
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_REJECTED",
            extra={"min_length": MIN_SALT_LENGTH, "salt_length": len(salt or "")}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt.encode()
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def _salt() -> bytes:
    if _PII_SALT is None:
        logger.critical("PII_SALT_MISSING")
        raise RuntimeError("PII salt not configured; call configure_pii_salt() at startup")
    return _PII_SALT


def hash_pii(value: Optional[str]) -> Optional[str]:
    """HMAC-SHA256 of an identifier as 64 hex chars; None passes through.

    Stable for a given salt, so the same subject hashes identically in
    every service and every log line.
    """
    if value is None:
        return None
    return hmac.new(_salt(), value.encode(), hashlib.sha256).hexdigest()


def hash_text_for_audit(text: str) -> str:
    # Unkeyed: audit fingerprints must survive salt rotation
    return hashlib.sha256(text.encode()).hexdigest()
