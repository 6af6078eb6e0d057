"""Conversions between external string identifiers and stored ObjectIds."""

from typing import Any, Iterable, List

from bson import ObjectId
from bson.errors import InvalidId

from family_hub.managers.family_errors import ValidationError


def to_object_id(value: Any, field: str = "id") -> ObjectId:
    """
    Convert an identifier to ObjectId.

    Raises:
        ValidationError: when the value is not a valid ObjectId
    """
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError) as e:
        raise ValidationError(f"Invalid {field}", field=field, value=value, constraint="object_id") from e


def to_object_ids(values: Iterable[Any], field: str = "ids") -> List[ObjectId]:
    """Convert many identifiers, preserving order and dropping duplicates."""
    seen = set()
    result = []
    for value in values:
        oid = to_object_id(value, field)
        if oid not in seen:
            seen.add(oid)
            result.append(oid)
    return result
