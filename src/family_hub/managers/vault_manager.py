"""
Family password vault.

Entries belong to the parent who created them and are visible to the ids in
``shared_with``. Passwords are stored Fernet-encrypted and returned decrypted.
"""

from typing import Any, Dict, List, Optional, Union

from pymongo import DESCENDING, ReturnDocument

from family_hub.database import db_manager
from family_hub.managers.family_errors import EntityNotFound, InsufficientPermissions, ValidationError
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.managers.sharing_resolver import SharingResolver
from family_hub.models.family_models import VaultCategory, VaultEntryRequest
from family_hub.utils.crypto import decrypt_secret, encrypt_secret
from family_hub.utils.datetime_utils import utc_now
from family_hub.utils.error_handling import handle_errors, parse_request
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[VaultManager]")

COLLECTION = "password_vault"
EDITABLE_FIELDS = set(VaultEntryRequest.model_fields)


class VaultManager:
    def __init__(self, db_manager: DatabaseManagerProtocol = None, sharing_resolver: SharingResolver = None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.sharing_resolver = sharing_resolver or SharingResolver(self.db_manager)
        self.logger = logger

    def _entries(self):
        return self.db_manager.get_collection(COLLECTION)

    @staticmethod
    def _reveal(entry: Dict[str, Any]) -> Dict[str, Any]:
        revealed = dict(entry)
        if revealed.get("password"):
            revealed["password"] = decrypt_secret(revealed["password"])
        return revealed

    async def _load(self, entry_id: Any) -> Dict[str, Any]:
        entry = await self._entries().find_one({"_id": to_object_id(entry_id, "entry_id")})
        if not entry:
            raise EntityNotFound("Password entry not found", entity="password_vault", entity_id=entry_id)
        return entry

    async def _load_owned(self, entry_id: Any, actor_id: Any, action: str) -> Dict[str, Any]:
        entry = await self._load(entry_id)
        actor_oid = to_object_id(actor_id, "parent_id")
        if entry["created_by"] != actor_oid:
            raise InsufficientPermissions(
                f"Not authorized to {action} this password entry", actor_id=actor_oid, required_party="creator"
            )
        return entry

    @handle_errors("create_vault_entry")
    async def create_entry(self, actor_id: Any, request: Union[VaultEntryRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Store a new entry owned by ``actor_id``.

        With ``shared_with_all`` the share set is the family expansion at this
        moment; later family changes are not reflected until the entry is saved
        again with the flag set.
        """
        payload = parse_request(VaultEntryRequest, request)
        actor_oid = to_object_id(actor_id, "parent_id")
        parent = await self.db_manager.get_collection("parents").find_one({"_id": actor_oid}, {"family_name": 1})
        if not parent:
            raise EntityNotFound("Parent not found", entity="parent", entity_id=actor_oid)

        shared_with = await self.sharing_resolver.resolve_shared_with(
            actor_oid, payload.shared_with, payload.shared_with_all
        )
        now = utc_now()
        entry = payload.model_dump(exclude={"shared_with"})
        entry.update(
            {
                "category": payload.category.value,
                "password": encrypt_secret(payload.password),
                "shared_with": shared_with,
                "created_by": actor_oid,
                "family_name": parent.get("family_name"),
                "created_at": now,
                "updated_at": now,
            }
        )
        result = await self._entries().insert_one(entry)
        entry["_id"] = result.inserted_id
        self.logger.info(
            "Vault entry %s created by %s, shared with %d members", result.inserted_id, actor_oid, len(shared_with)
        )
        return self._reveal(entry)

    @handle_errors("update_vault_entry")
    async def update_entry(self, entry_id: Any, actor_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update. Creator only; the share set is recomputed when sharing fields change."""
        entry = await self._load_owned(entry_id, actor_id, "update")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", field="changes")

        # share-all applies only to the write that asks for it
        current = {key: entry.get(key) for key in EDITABLE_FIELDS - {"shared_with_all"} if entry.get(key) is not None}
        current["password"] = decrypt_secret(entry["password"])
        current["shared_with"] = [str(oid) for oid in entry.get("shared_with") or []]
        payload = parse_request(VaultEntryRequest, {**current, **changes})

        update: Dict[str, Any] = {}
        for key in changes:
            if key == "shared_with":
                continue
            value = getattr(payload, key)
            update[key] = value.value if isinstance(value, VaultCategory) else value
        if "password" in update:
            update["password"] = encrypt_secret(payload.password)
        if "shared_with" in changes or payload.shared_with_all:
            update["shared_with"] = await self.sharing_resolver.resolve_shared_with(
                entry["created_by"], payload.shared_with, payload.shared_with_all
            )
        update["updated_at"] = utc_now()

        updated = await self._entries().find_one_and_update(
            {"_id": entry["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        if updated is None:
            raise EntityNotFound("Password entry not found", entity="password_vault", entity_id=entry["_id"])
        self.logger.info("Vault entry %s updated (%s)", entry["_id"], ", ".join(sorted(changes)))
        return self._reveal(updated)

    @handle_errors("get_vault_entry")
    async def get_entry(self, entry_id: Any, actor_id: Any) -> Dict[str, Any]:
        entry = await self._load(entry_id)
        actor_oid = to_object_id(actor_id, "member_id")
        if entry["created_by"] != actor_oid and actor_oid not in (entry.get("shared_with") or []):
            raise InsufficientPermissions("Not authorized to access this password entry", actor_id=actor_oid)
        return self._reveal(entry)

    @handle_errors("list_vault_entries")
    async def list_entries(
        self, actor_id: Any, category: Optional[str] = None, favorites_only: bool = False
    ) -> List[Dict[str, Any]]:
        """Entries the actor created or that are shared with them, newest first."""
        actor_oid = to_object_id(actor_id, "member_id")
        query: Dict[str, Any] = {"$or": [{"created_by": actor_oid}, {"shared_with": actor_oid}]}
        if category:
            try:
                query["category"] = VaultCategory(category.lower()).value
            except ValueError as e:
                raise ValidationError("Invalid category", field="category", value=category) from e
        if favorites_only:
            query["is_favorite"] = True
        entries = await self._entries().find(query).sort("created_at", DESCENDING).to_list(length=None)
        return [self._reveal(entry) for entry in entries]

    @handle_errors("toggle_vault_favorite")
    async def toggle_favorite(self, entry_id: Any, actor_id: Any) -> Dict[str, Any]:
        entry = await self._load_owned(entry_id, actor_id, "favorite")
        updated = await self._entries().find_one_and_update(
            {"_id": entry["_id"]},
            {"$set": {"is_favorite": not entry.get("is_favorite", False), "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._reveal(updated)

    @handle_errors("delete_vault_entry")
    async def delete_entry(self, entry_id: Any, actor_id: Any) -> None:
        entry = await self._load_owned(entry_id, actor_id, "delete")
        await self._entries().delete_one({"_id": entry["_id"]})
        self.logger.info("Vault entry %s deleted", entry["_id"])


vault_manager = VaultManager()
