"""
Membership resolution over the family graph.

The family closure of a parent is that parent plus every parent listed in its
``family_members`` array. Closure is one hop only: if A is merged with B and B
with C, A does not see C unless A and C are merged directly. Whether that is
an intended privacy boundary or a limitation is still an open product
question, so it must not be widened to a transitive closure here.

Every ownership check for children, events, vault entries and messages is
phrased as "does the target's owning parent belong to
``resolve_family_parent_ids(actor)``".
"""

from typing import Any, Dict, List, Optional, Set

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from family_hub.database import db_manager
from family_hub.managers.family_errors import EntityNotFound
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.models.family_models import MEMBER_COLLECTIONS, MemberKind, MemberRef

logger = get_logger(prefix="[MembershipResolver]")


def _as_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


class MembershipResolver:
    """Computes the parents and members an actor has visibility into."""

    def __init__(self, db_manager: DatabaseManagerProtocol = None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.logger = logger

    async def resolve_family_parent_ids(self, actor_parent_id: Any) -> Set[ObjectId]:
        """
        Return ``{actor} ∪ actor.family_members``.

        Never raises: an unknown actor, or a store failure, resolves to just
        ``{actor}``; a malformed id resolves to the empty set.
        """
        actor_oid = _as_object_id(actor_parent_id)
        if actor_oid is None:
            self.logger.warning("Cannot resolve family for malformed parent id %r", actor_parent_id)
            return set()

        try:
            parent = await self.db_manager.get_collection("parents").find_one(
                {"_id": actor_oid}, {"family_members": 1}
            )
        except PyMongoError as e:
            self.logger.error("Family resolution failed for %s, using actor only: %s", actor_oid, e)
            return {actor_oid}

        if not parent:
            self.logger.debug("Parent %s not found, family closure is the actor alone", actor_oid)
            return {actor_oid}

        parent_ids = {actor_oid}
        parent_ids.update(parent.get("family_members") or [])
        return parent_ids

    async def resolve_family_member_refs(self, actor_parent_id: Any) -> List[MemberRef]:
        """Parents of the closure, then their teens, then their children. De-duplicated by id."""
        parent_ids = await self.resolve_family_parent_ids(actor_parent_id)
        if not parent_ids:
            return []

        actor_oid = _as_object_id(actor_parent_id)
        parent_list = sorted(parent_ids, key=lambda oid: (oid != actor_oid, str(oid)))
        refs: Dict[ObjectId, MemberRef] = {}
        for parent_id in parent_list:
            refs[parent_id] = MemberRef.parent(parent_id)

        teens = await self.db_manager.get_collection("teens").find(
            {"parent": {"$in": parent_list}}, {"_id": 1}
        ).to_list(length=None)
        for teen in teens:
            refs.setdefault(teen["_id"], MemberRef.teen(teen["_id"]))

        children = await self.db_manager.get_collection("children").find(
            {"$or": [{"family": {"$in": parent_list}}, {"parents": {"$in": parent_list}}]}, {"_id": 1}
        ).to_list(length=None)
        for child in children:
            refs.setdefault(child["_id"], MemberRef.child(child["_id"]))

        return list(refs.values())

    async def resolve_family_member_ids(self, actor_parent_id: Any) -> Set[ObjectId]:
        """Closure parents plus every teen and child owned by one of them."""
        return {ref.object_id for ref in await self.resolve_family_member_refs(actor_parent_id)}

    async def get_member(self, ref: MemberRef) -> Dict[str, Any]:
        """Load the document a reference points at."""
        doc = await self.db_manager.get_collection(MEMBER_COLLECTIONS[ref.kind]).find_one({"_id": ref.object_id})
        if not doc:
            raise EntityNotFound(f"{ref.kind.value.capitalize()} not found", entity=ref.kind.value, entity_id=ref.id)
        return doc

    @staticmethod
    def owning_parent_ids(ref: MemberRef, doc: Dict[str, Any]) -> Set[ObjectId]:
        """Parents that own a member: itself, a teen's parent, or a child's family and legacy parents."""
        if ref.kind == MemberKind.PARENT:
            return {doc["_id"]}
        if ref.kind == MemberKind.TEEN:
            return {doc["parent"]} if doc.get("parent") else set()
        owners = set(doc.get("parents") or [])
        if doc.get("family"):
            owners.add(doc["family"])
        return owners

    async def can_access_parent(self, actor_parent_id: Any, target_parent_id: Any) -> bool:
        target = _as_object_id(target_parent_id)
        return target is not None and target in await self.resolve_family_parent_ids(actor_parent_id)

    async def can_access_member(self, actor_parent_id: Any, ref: MemberRef, doc: Dict[str, Any] = None) -> bool:
        """True when one of the member's owning parents is inside the actor's closure."""
        if doc is None:
            doc = await self.get_member(ref)
        allowed = await self.resolve_family_parent_ids(actor_parent_id)
        return bool(self.owning_parent_ids(ref, doc) & allowed)

    async def get_family_directory(self, actor_parent_id: Any) -> List[Dict[str, Any]]:
        """
        List every member of the actor's closure with display details.

        Returns:
            One entry per member id: kind, id, name, email, phone_number, is_self
        """
        actor_oid = _as_object_id(actor_parent_id)
        refs = await self.resolve_family_member_refs(actor_parent_id)
        by_kind: Dict[MemberKind, List[ObjectId]] = {kind: [] for kind in MemberKind}
        for ref in refs:
            by_kind[ref.kind].append(ref.object_id)

        docs: Dict[ObjectId, Dict[str, Any]] = {}
        for kind, ids in by_kind.items():
            if not ids:
                continue
            cursor = self.db_manager.get_collection(MEMBER_COLLECTIONS[kind]).find({"_id": {"$in": ids}})
            for doc in await cursor.to_list(length=None):
                docs[doc["_id"]] = doc

        directory = []
        for ref in refs:
            doc = docs.get(ref.object_id)
            if doc is None:
                continue
            name = doc.get("name") or " ".join(
                part for part in (doc.get("first_name"), doc.get("last_name")) if part
            )
            directory.append(
                {
                    "kind": ref.kind.value,
                    "id": ref.id,
                    "name": name,
                    "email": doc.get("email"),
                    "phone_number": doc.get("phone_number"),
                    "family_name": doc.get("family_name"),
                    "is_self": ref.object_id == actor_oid,
                }
            )
        return directory
