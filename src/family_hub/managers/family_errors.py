"""
Typed failures raised by the family workflows.

Every workflow operation raises one of these instead of a generic error; the
route layer maps ``error_code`` to a transport response. Side-channel failures
(notification delivery) are never raised through this hierarchy.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class FamilyError(Exception):
    """Base family exception with error code and context."""

    def __init__(self, message: str, error_code: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "FAMILY_ERROR"
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class EntityNotFound(FamilyError):
    """An identifier does not resolve to a stored entity."""

    def __init__(self, message: str, entity: str = None, entity_id: Any = None):
        super().__init__(
            message,
            "NOT_FOUND",
            {"entity": entity, "entity_id": str(entity_id) if entity_id is not None else None},
        )


class ConflictError(FamilyError):
    """Duplicate pending request or invitation, already merged pair, or already used code."""

    def __init__(self, message: str, reason: str = None, existing_id: Any = None):
        super().__init__(
            message,
            "CONFLICT",
            {"reason": reason, "existing_id": str(existing_id) if existing_id is not None else None},
        )


class InsufficientPermissions(FamilyError):
    """Actor is not the authorized party for the operation."""

    def __init__(self, message: str, actor_id: Any = None, required_party: str = None):
        super().__init__(
            message,
            "FORBIDDEN",
            {"actor_id": str(actor_id) if actor_id is not None else None, "required_party": required_party},
        )


class InvalidStateTransition(FamilyError):
    """Transition attempted from a terminal or otherwise wrong state."""

    def __init__(self, message: str, current_status: str = None, expected_status: Optional[List[str]] = None):
        super().__init__(
            message,
            "INVALID_STATE",
            {"current_status": current_status, "expected_status": expected_status or []},
        )


class EntityExpired(FamilyError):
    """A time-boxed entity is past its deadline."""

    def __init__(self, message: str, entity: str = None, expired_at: datetime = None):
        super().__init__(
            message,
            "EXPIRED",
            {"entity": entity, "expired_at": expired_at.isoformat() if expired_at else None},
        )


class ValidationError(FamilyError):
    """Input validation failed with field-specific details."""

    def __init__(self, message: str, field: str = None, value: Any = None, constraint: str = None):
        super().__init__(
            message,
            "VALIDATION_FAILED",
            {"field": field, "value": str(value) if value is not None else None, "constraint": constraint},
        )


class RateLimitExceeded(FamilyError):
    """Maximum verification attempts exceeded."""

    def __init__(self, message: str, action: str = None, limit: int = None, attempts: int = None):
        super().__init__(message, "RATE_LIMITED", {"action": action, "limit": limit, "attempts": attempts})


class DatabaseError(FamilyError):
    """Storage failure surfaced from the persistence layer."""

    def __init__(self, message: str, operation: str = None, collection: str = None):
        super().__init__(message, "DATABASE_ERROR", {"operation": operation, "collection": collection})
