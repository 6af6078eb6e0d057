"""
Family graph mutations.

``family_members`` on a parent must stay symmetric: if A lists B, B lists A.
Every write here is an idempotent set union, so invitation accept and merge
approve can both link the same pair safely. Without a transaction
``merge_households`` keeps a journal of what it actually changed and undoes
exactly that before re-raising, so a failed merge leaves no half-link behind.
"""

from dataclasses import dataclass, field
import time
from typing import Any, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import PyMongoError

from family_hub.database import db_manager
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol

logger = get_logger(prefix="[FamilyGraph]")


@dataclass
class MergeResult:
    """Affected ids plus the journal of links this run actually added."""

    children: List[ObjectId] = field(default_factory=list)
    events: List[ObjectId] = field(default_factory=list)
    added_links: List[Tuple[ObjectId, ObjectId]] = field(default_factory=list)
    added_child_parents: List[Tuple[ObjectId, List[ObjectId]]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added_links or self.added_child_parents)


class FamilyGraphManager:
    """Symmetric, idempotent linking of households."""

    def __init__(self, db_manager: DatabaseManagerProtocol = None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.logger = logger

    async def _add_family_member(self, parent_id: ObjectId, member_id: ObjectId, session: Any = None) -> bool:
        result = await self.db_manager.get_collection("parents").update_one(
            {"_id": parent_id, "family_members": {"$ne": member_id}},
            {"$addToSet": {"family_members": member_id}},
            session=session,
        )
        return result.modified_count > 0

    async def link_parents(
        self, parent_a: ObjectId, parent_b: ObjectId, session: Any = None, journal: Optional[MergeResult] = None
    ) -> List[Tuple[ObjectId, ObjectId]]:
        """
        Add B to A's family_members and A to B's, each only if absent.

        Returns:
            The (owner, member) links that did not exist before this call
        """
        added = []
        for owner, member in ((parent_a, parent_b), (parent_b, parent_a)):
            if await self._add_family_member(owner, member, session):
                added.append((owner, member))
                if journal is not None:
                    journal.added_links.append((owner, member))
        self.logger.debug("Linked parents %s <-> %s (new links: %d)", parent_a, parent_b, len(added))
        return added

    async def merge_households(self, parent_a: ObjectId, parent_b: ObjectId, session: Any = None) -> MergeResult:
        """
        Merge two households.

        Links the parents symmetrically, adds each parent to the legacy
        ``parents`` set of every child owned by either household, and collects
        the affected child and event ids. Safe to re-run.
        """
        start_time = self.db_manager.log_query_start(
            "parents", "merge_households", {"parent_a": str(parent_a), "parent_b": str(parent_b)}
        )
        result = MergeResult()
        try:
            await self.link_parents(parent_a, parent_b, session=session, journal=result)

            children_collection = self.db_manager.get_collection("children")
            household = [parent_a, parent_b]
            children = await children_collection.find(
                {"$or": [{"family": {"$in": household}}, {"parents": {"$in": household}}]},
                {"_id": 1, "parents": 1},
                session=session,
            ).to_list(length=None)

            for child in children:
                result.children.append(child["_id"])
                existing = set(child.get("parents") or [])
                missing = [pid for pid in household if pid not in existing]
                if not missing:
                    continue
                update = await children_collection.update_one(
                    {"_id": child["_id"]},
                    {"$addToSet": {"parents": {"$each": missing}}},
                    session=session,
                )
                if update.modified_count:
                    result.added_child_parents.append((child["_id"], missing))

            events = await self.db_manager.get_collection("events").find(
                {"created_by": {"$in": household}}, {"_id": 1}, session=session
            ).to_list(length=None)
            result.events = [event["_id"] for event in events]

        except Exception as e:
            self.db_manager.log_query_error("parents", "merge_households", start_time, e)
            if session is None and result.changed:
                await self.undo_merge(result)
            raise

        self.db_manager.log_query_success(
            "parents",
            "merge_households",
            start_time,
            len(result.children),
            f"links added: {len(result.added_links)}, child links added: {len(result.added_child_parents)}",
        )
        return result

    async def undo_merge(self, result: MergeResult) -> None:
        """Remove exactly the links recorded in a merge journal."""
        undo_start = time.time()
        parents = self.db_manager.get_collection("parents")
        children = self.db_manager.get_collection("children")
        try:
            for owner, member in result.added_links:
                await parents.update_one({"_id": owner}, {"$pull": {"family_members": member}})
            for child_id, added in result.added_child_parents:
                await children.update_one({"_id": child_id}, {"$pull": {"parents": {"$in": added}}})
        except PyMongoError as e:
            self.logger.critical(
                "Failed to undo partial merge, manual repair needed: %s",
                e,
                extra={
                    "added_links": [(str(a), str(b)) for a, b in result.added_links],
                    "added_child_parents": [(str(c), [str(p) for p in ps]) for c, ps in result.added_child_parents],
                },
            )
            return
        self.logger.warning(
            "Undid partial merge in %.3fs (%d parent links, %d child links)",
            time.time() - undo_start,
            len(result.added_links),
            len(result.added_child_parents),
        )

    async def unlink(self, links: List[Tuple[ObjectId, ObjectId]], session: Any = None) -> None:
        """Remove (owner, member) links previously returned by ``link_parents``."""
        parents = self.db_manager.get_collection("parents")
        for owner, member in links:
            await parents.update_one({"_id": owner}, {"$pull": {"family_members": member}}, session=session)

    async def attach_teen(self, parent_id: ObjectId, teen_id: ObjectId, session: Any = None) -> None:
        await self.db_manager.get_collection("parents").update_one(
            {"_id": parent_id}, {"$addToSet": {"teen_accounts": teen_id}}, session=session
        )
