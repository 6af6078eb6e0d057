"""
Pytest configuration for the family workflow tests.

Provides an in-memory stand-in for the Motor collection API so workflows run
against real query and update semantics without a MongoDB server. Every
operation yields to the event loop first, so tests that race two coroutines
interleave at the same points a real driver would.
"""

import asyncio
import copy
from datetime import date, datetime
import os
import sys
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId
import pytest

# Settings are read at import time
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("FERNET_KEY", "family-hub-test-suite-fernet-key")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOKI_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from pymongo.errors import DuplicateKeyError  # noqa: E402

from family_hub.managers.credential_manager import hash_password  # noqa: E402
from family_hub.managers.notification_manager import NotificationManager  # noqa: E402
from family_hub.utils.datetime_utils import utc_now  # noqa: E402

_MISSING = object()

# bcrypt is slow; hash the fixture passwords once
PARENT_PASSWORD_HASH = hash_password("parent-pass")
TEEN_PASSWORD_HASH = hash_password("teen-pass")

# collection -> [(fields, partial filter)]
UNIQUE_CONSTRAINTS: Dict[str, List[Tuple[Tuple[str, ...], Optional[Dict[str, Any]]]]] = {
    "parents": [(("email",), None)],
    "invitations": [(("token",), None)],
    "merge_requests": [(("requester", "recipient", "status"), {"status": "pending"})],
    "teens": [(("email",), {"email": {"$type": "string"}})],
}

BSON_TYPES = {"string": str, "objectId": ObjectId, "date": datetime, "bool": bool}


def _resolve(doc: Any, path: str) -> List[Any]:
    """Values at a dotted path, descending through arrays of sub-documents."""
    values = [doc]
    for part in path.split("."):
        found = []
        for value in values:
            if isinstance(value, dict):
                if part in value:
                    found.append(value[part])
            elif isinstance(value, list):
                found.extend(item[part] for item in value if isinstance(item, dict) and part in item)
        values = found
    return values


def _equals(value: Any, expected: Any) -> bool:
    if value == expected:
        return True
    return isinstance(value, list) and not isinstance(expected, list) and expected in value


def _compare(values: List[Any], expected: Any, op) -> bool:
    flat = []
    for value in values:
        flat.extend(value if isinstance(value, list) else [value])
    for value in flat:
        try:
            if value is not None and op(value, expected):
                return True
        except TypeError:
            continue
    return False


def _match_condition(doc: Dict[str, Any], path: str, condition: Any) -> bool:
    values = _resolve(doc, path)
    if isinstance(condition, dict) and condition and all(key.startswith("$") for key in condition):
        for op, expected in condition.items():
            if op == "$in":
                ok = any(_match_condition(doc, path, item) for item in expected)
            elif op == "$nin":
                ok = not any(_match_condition(doc, path, item) for item in expected)
            elif op == "$ne":
                ok = not _match_condition(doc, path, expected)
            elif op == "$exists":
                ok = bool(values) == bool(expected)
            elif op == "$type":
                ok = any(isinstance(value, BSON_TYPES[expected]) for value in values)
            elif op == "$gt":
                ok = _compare(values, expected, lambda a, b: a > b)
            elif op == "$gte":
                ok = _compare(values, expected, lambda a, b: a >= b)
            elif op == "$lt":
                ok = _compare(values, expected, lambda a, b: a < b)
            elif op == "$lte":
                ok = _compare(values, expected, lambda a, b: a <= b)
            else:
                raise NotImplementedError(f"Unsupported query operator {op}")
            if not ok:
                return False
        return True
    if not values:
        return condition is None
    return any(_equals(value, condition) for value in values)


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _match_condition(doc, key, condition):
            return False
    return True


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _get_path(doc: Dict[str, Any], path: str, default: Any = _MISSING) -> Any:
    for part in path.split("."):
        if not isinstance(doc, dict) or part not in doc:
            return default
        doc = doc[part]
    return doc


def _unset_path(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.get(part)
        if not isinstance(doc, dict):
            return
    doc.pop(parts[-1], None)


def apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                _set_path(doc, path, copy.deepcopy(value))
            elif op == "$unset":
                _unset_path(doc, path)
            elif op == "$inc":
                _set_path(doc, path, _get_path(doc, path, 0) + value)
            elif op in ("$addToSet", "$push"):
                current = _get_path(doc, path, _MISSING)
                current = [] if current is _MISSING or current is None else current
                items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                for item in items:
                    if op == "$push" or item not in current:
                        current.append(copy.deepcopy(item))
                _set_path(doc, path, current)
            elif op == "$pull":
                current = _get_path(doc, path, [])
                if isinstance(value, dict) and "$in" in value:
                    kept = [item for item in current if item not in value["$in"]]
                else:
                    kept = [item for item in current if item != value]
                _set_path(doc, path, kept)
            else:
                raise NotImplementedError(f"Unsupported update operator {op}")


def project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = {key for key, flag in projection.items() if flag}
    if included:
        keep = included | ({"_id"} if projection.get("_id", 1) else set())
        return {key: value for key, value in doc.items() if key in keep}
    return {key: value for key, value in doc.items() if key not in projection}


def _sort_docs(docs: List[Dict[str, Any]], keys: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    for field, direction in reversed(keys):
        present = [d for d in docs if _get_path(d, field, None) is not None]
        missing = [d for d in docs if _get_path(d, field, None) is None]
        present.sort(key=lambda d: _get_path(d, field), reverse=direction < 0)
        docs = missing + present if direction > 0 else present + missing
    return docs


def _normalize_sort(key_or_list: Any, direction: Optional[int] = None) -> List[Tuple[str, int]]:
    if isinstance(key_or_list, str):
        return [(key_or_list, direction if direction is not None else 1)]
    return list(key_or_list)


class FakeCursor:
    def __init__(self, collection: "FakeCollection", query: Optional[Dict], projection: Optional[Dict]):
        self._collection = collection
        self._query = query
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list: Any, direction: Optional[int] = None) -> "FakeCursor":
        self._sort = _normalize_sort(key_or_list, direction)
        return self

    def skip(self, count: int) -> "FakeCursor":
        self._skip = count
        return self

    def limit(self, count: int) -> "FakeCursor":
        self._limit = count
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        docs = [doc for doc in self._collection.docs if matches(doc, self._query)]
        if self._sort:
            docs = _sort_docs(docs, self._sort)
        docs = docs[self._skip :]
        if self._limit:
            docs = docs[: self._limit]
        if length:
            docs = docs[:length]
        return [project(doc, self._projection) for doc in docs]


class FakeCollection:
    """Subset of AsyncIOMotorCollection used by the managers."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.fail_on: Dict[str, Exception] = {}

    def _check_failure(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def _check_unique(self, candidate: Dict[str, Any]) -> None:
        for fields, partial in UNIQUE_CONSTRAINTS.get(self.name, []):
            if partial and not matches(candidate, partial):
                continue
            # absent fields are skipped; an explicit null is indexed like any value
            key = tuple(_get_path(candidate, field) for field in fields)
            if all(value is _MISSING for value in key):
                continue
            for doc in self.docs:
                if doc is candidate or doc.get("_id") == candidate.get("_id"):
                    continue
                if partial and not matches(doc, partial):
                    continue
                if tuple(_get_path(doc, field) for field in fields) == key:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} {fields}")

    def _first(self, query: Optional[Dict], sort: Any = None) -> Optional[Dict[str, Any]]:
        docs = [doc for doc in self.docs if matches(doc, query)]
        if sort:
            docs = _sort_docs(docs, _normalize_sort(sort))
        return docs[0] if docs else None

    async def find_one(self, query=None, projection=None, sort=None, session=None, **kwargs):
        await asyncio.sleep(0)
        self._check_failure("find_one")
        doc = self._first(query, sort)
        return project(doc, projection) if doc else None

    def find(self, query=None, projection=None, session=None, **kwargs) -> FakeCursor:
        self._check_failure("find")
        return FakeCursor(self, query, projection)

    async def count_documents(self, query, session=None, **kwargs) -> int:
        await asyncio.sleep(0)
        return sum(1 for doc in self.docs if matches(doc, query))

    async def insert_one(self, document, session=None, **kwargs):
        await asyncio.sleep(0)
        self._check_failure("insert_one")
        stored = copy.deepcopy(document)
        stored.setdefault("_id", ObjectId())
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"], acknowledged=True)

    def _update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> bool:
        before = copy.deepcopy(doc)
        candidate = copy.deepcopy(doc)
        apply_update(candidate, update)
        self._check_unique(candidate)
        doc.clear()
        doc.update(candidate)
        return doc != before

    async def update_one(self, query, update, upsert=False, session=None, **kwargs):
        await asyncio.sleep(0)
        self._check_failure("update_one")
        doc = self._first(query)
        if doc is None:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        modified = self._update(doc, update)
        return SimpleNamespace(matched_count=1, modified_count=int(modified), upserted_id=None)

    async def update_many(self, query, update, session=None, **kwargs):
        await asyncio.sleep(0)
        self._check_failure("update_many")
        targets = [doc for doc in self.docs if matches(doc, query)]
        modified = sum(1 for doc in targets if self._update(doc, update))
        return SimpleNamespace(matched_count=len(targets), modified_count=modified)

    async def find_one_and_update(
        self, query, update, projection=None, return_document=False, session=None, **kwargs
    ):
        await asyncio.sleep(0)
        self._check_failure("find_one_and_update")
        doc = self._first(query, kwargs.get("sort"))
        if doc is None:
            return None
        before = project(doc, projection)
        self._update(doc, update)
        return project(doc, projection) if return_document else before

    async def delete_one(self, query, session=None, **kwargs):
        await asyncio.sleep(0)
        self._check_failure("delete_one")
        doc = self._first(query)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)

    def get(self, doc_id: ObjectId) -> Optional[Dict[str, Any]]:
        """Direct read for assertions."""
        return next((doc for doc in self.docs if doc["_id"] == doc_id), None)


class FakeDatabaseManager:
    """Implements the database manager surface the workflows depend on."""

    def __init__(self, transactions_supported: bool = False):
        self.collections: Dict[str, FakeCollection] = {}
        self.transactions_supported = transactions_supported
        self.client = None
        self.logged_errors: List[Tuple[str, str, Exception]] = []

    def get_collection(self, collection_name: str) -> FakeCollection:
        if collection_name not in self.collections:
            self.collections[collection_name] = FakeCollection(collection_name)
        return self.collections[collection_name]

    def log_query_start(self, collection_name, operation, query=None, options=None) -> float:
        return time.time()

    def log_query_success(self, collection_name, operation, start_time, result_count=None, result_info=None):
        return None

    def log_query_error(self, collection_name, operation, start_time, error, query=None):
        self.logged_errors.append((collection_name, operation, error))


class FamilyFactory:
    """Inserts parents, teens and children straight into the fake store."""

    def __init__(self, db: FakeDatabaseManager):
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def parent(self, first_name: str = None, family_name: str = "Smith", **fields) -> Dict[str, Any]:
        n = self._next()
        doc = {
            "_id": ObjectId(),
            "first_name": first_name or f"Parent{n}",
            "last_name": family_name,
            "email": f"parent{n}@example.com",
            "family_name": family_name,
            "phone_number": None,
            "password_hash": PARENT_PASSWORD_HASH,
            "role": "parent",
            "parent_role": "parent",
            "family_members": [],
            "teen_accounts": [],
            "notification_preference": "email",
            "created_at": utc_now(),
        }
        doc.update(fields)
        self.db.get_collection("parents").docs.append(doc)
        return doc

    def child(self, family: Dict[str, Any], name: str = None, **fields) -> Dict[str, Any]:
        doc = {
            "_id": ObjectId(),
            "name": name or f"Child{self._next()}",
            "family": family["_id"],
            "parents": [family["_id"]],
            "email": None,
            "phone_number": None,
            "created_at": utc_now(),
        }
        doc.update(fields)
        self.db.get_collection("children").docs.append(doc)
        return doc

    def teen(self, parent: Dict[str, Any], **fields) -> Dict[str, Any]:
        n = self._next()
        doc = {
            "_id": ObjectId(),
            "first_name": f"Teen{n}",
            "last_name": parent.get("family_name"),
            "email": f"teen{n}@example.com",
            "phone_number": None,
            "password_hash": TEEN_PASSWORD_HASH,
            "account_role": "teen",
            "date_of_birth": date(2010, 1, 1),
            "parent": parent["_id"],
            "family_name": parent.get("family_name"),
            "is_active": True,
            "created_at": utc_now(),
        }
        doc.update(fields)
        self.db.get_collection("teens").docs.append(doc)
        self.db.get_collection("parents").get(parent["_id"])["teen_accounts"].append(doc["_id"])
        return doc

    def link(self, parent_a: Dict[str, Any], parent_b: Dict[str, Any]) -> None:
        parents = self.db.get_collection("parents")
        parents.get(parent_a["_id"])["family_members"].append(parent_b["_id"])
        parents.get(parent_b["_id"])["family_members"].append(parent_a["_id"])


@pytest.fixture
def fake_db():
    return FakeDatabaseManager()


@pytest.fixture
def family(fake_db):
    return FamilyFactory(fake_db)


@pytest.fixture
def email_sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=None)
    sender.send_family_invitation_email = AsyncMock(return_value=True)
    sender.send_teen_invitation_email = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def sms_sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=None)
    sender.send_teen_invitation_sms = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def notifier(email_sender, sms_sender):
    return NotificationManager(email_manager=email_sender, sms_manager=sms_sender)
