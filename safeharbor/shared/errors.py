"""Typed failures surfaced by the crisis engine.

NotFound, Conflict, Validation and Unauthorized abort the operation that
raised them. "No responder available" is not an error and never raises.
"""


class SafeHarborError(Exception):
    """Base class for all engine failures."""
    pass


class NotFoundError(SafeHarborError):
    """Incident, connection, responder or resource id does not exist."""
    pass


class ConflictError(SafeHarborError):
    """Entity already exists (e.g. duplicate responder registration)."""
    pass


class ValidationError(SafeHarborError):
    """Request violates a precondition or an entity invariant."""
    pass


class UnauthorizedError(SafeHarborError):
    """Requester may not see or change the target entity."""
    pass
