"""
Credential store.

Owns the password hashing scheme (bcrypt); callers only ever hand over plain
candidates and account ids.
"""

from typing import Any

import bcrypt

from family_hub.database import db_manager
from family_hub.managers.family_errors import EntityNotFound, ValidationError
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.models.family_models import PASSWORD_MIN_LENGTH
from family_hub.utils.datetime_utils import utc_now
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[CredentialManager]")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


class CredentialManager:
    """Verify and replace account passwords in a given account collection."""

    def __init__(self, db_manager: DatabaseManagerProtocol = None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]

    async def verify_password(self, collection_name: str, account_id: Any, candidate: str) -> bool:
        account = await self.db_manager.get_collection(collection_name).find_one(
            {"_id": to_object_id(account_id, "account_id")}, {"password_hash": 1}
        )
        if not account:
            return False
        return check_password(candidate, account.get("password_hash"))

    async def set_password(self, collection_name: str, account_id: Any, new_password: str) -> None:
        if not new_password or len(new_password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"New password must be at least {PASSWORD_MIN_LENGTH} characters",
                field="password",
                constraint=f"min_length={PASSWORD_MIN_LENGTH}",
            )
        account_oid = to_object_id(account_id, "account_id")
        result = await self.db_manager.get_collection(collection_name).update_one(
            {"_id": account_oid},
            {"$set": {"password_hash": hash_password(new_password), "password_changed_at": utc_now()}},
        )
        if result.matched_count == 0:
            raise EntityNotFound("Account not found", entity=collection_name, entity_id=account_oid)
        logger.info("Password updated for %s in %s", account_oid, collection_name)
