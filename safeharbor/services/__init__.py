"""SafeHarbor services.

- detection_service: Deterministic keyword crisis detection and escalation analysis
- resource_service: Helpline/clinic directory and ranked matching
- responder_service: Responder onboarding, capacity-safe dispatch, ratings
- audit_service: Hash-chained incident audit trail
- crisis_engine: Incident lifecycle, follow-ups, notifications and HTTP API

All subject identifiers are logged through hash_pii().
"""
