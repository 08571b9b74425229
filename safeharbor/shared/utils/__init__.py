"""Shared utilities for SafeHarbor services."""
from .pii import hash_pii, hash_text_for_audit, configure_pii_salt
from .clock import Clock, SystemClock, FrozenClock

__all__ = [
    "hash_pii",
    "hash_text_for_audit",
    "configure_pii_salt",
    "Clock",
    "SystemClock",
    "FrozenClock",
]
