"""
Error handling utilities shared by the family workflows.

- ``handle_errors`` wraps a workflow coroutine: typed ``FamilyError`` failures
  pass through untouched, storage failures are logged and converted into typed
  failures.
- ``run_best_effort`` executes a side-channel coroutine (notification delivery,
  audit writes) and hands its failure back as a value instead of raising.
- ``sanitize_sensitive_data`` redacts codes, tokens and passwords before they
  reach the logs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import functools
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from family_hub.managers.family_errors import ConflictError, DatabaseError, FamilyError, ValidationError
from family_hub.managers.logging_manager import get_logger

logger = get_logger(prefix="[Error Handling]")

ModelT = TypeVar("ModelT", bound=BaseModel)

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "key",
    "credential",
    "hash",
    "code",
)


@dataclass
class ErrorContext:
    """Context information for error handling and logging."""

    operation: str
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "operation": self.operation,
            "user_id": self.user_id,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": sanitize_sensitive_data(self.metadata),
        }


def sanitize_sensitive_data(data: Any) -> Any:
    """
    Sanitize sensitive data from logs and error messages.

    Args:
        data: Data to sanitize (dict, list or scalar)

    Returns:
        Sanitized data with sensitive values redacted
    """
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_KEYS):
                sanitized[key] = "<REDACTED>"
            else:
                sanitized[key] = sanitize_sensitive_data(value)
        return sanitized
    if isinstance(data, list):
        return [sanitize_sensitive_data(item) for item in data]
    return data


def handle_errors(operation: str) -> Callable:
    """
    Decorator for workflow coroutines.

    Typed family failures propagate unchanged. A unique index violation becomes
    a ``ConflictError``; any other storage failure becomes a ``DatabaseError``.
    """

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except FamilyError:
                raise
            except DuplicateKeyError as e:
                logger.warning("Duplicate key during %s: %s", operation, e)
                raise ConflictError(f"Duplicate entry rejected during {operation}", reason="duplicate_key") from e
            except PyMongoError as e:
                logger.error("Database error during %s: %s", operation, e, exc_info=True)
                raise DatabaseError(f"Database error during {operation}", operation=operation) from e

        return wrapper

    return decorator


def parse_request(model: Type[ModelT], data: Union[ModelT, Dict[str, Any]]) -> ModelT:
    """
    Validate a request payload into ``model``.

    Raises:
        ValidationError: with the first failing field, instead of pydantic's error
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or None
        message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
        raise ValidationError(message, field=field_name, constraint=first.get("type")) from e


async def run_best_effort(
    coro_factory: Callable[[], Awaitable[Any]], context: ErrorContext
) -> Tuple[Any, Optional[Exception]]:
    """
    Run a side-channel coroutine without letting its failure escape.

    Returns:
        (result, None) on success, (None, exception) on failure
    """
    try:
        return await coro_factory(), None
    except Exception as e:
        logger.warning(
            "Best-effort operation %s failed: %s", context.operation, e, extra={"context": context.to_dict()}
        )
        return None, e
