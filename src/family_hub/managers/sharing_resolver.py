"""
"Share with all" expansion for vault entries, events and tasks.

The expansion is a snapshot: it is computed once when the resource is written
and stored on the resource as a concrete id set. Members who join the family
afterwards only appear once the resource is saved again with the share-all
flag set.
"""

from typing import Any, Iterable, List, Set

from bson import ObjectId

from family_hub.database import db_manager
from family_hub.managers.family_errors import ValidationError
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.membership_resolver import MembershipResolver
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.models.family_models import MemberRef
from family_hub.utils.object_ids import to_object_ids

logger = get_logger(prefix="[SharingResolver]")


class SharingResolver:
    def __init__(self, db_manager: DatabaseManagerProtocol = None, resolver: MembershipResolver = None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.resolver = resolver or MembershipResolver(self.db_manager)

    async def expand_to_all_refs(self, actor_parent_id: Any) -> List[MemberRef]:
        """Member closure plus teens listed in a closure parent's ``teen_accounts`` but not yet captured."""
        refs = await self.resolver.resolve_family_member_refs(actor_parent_id)
        if not refs:
            return refs
        seen = {ref.object_id for ref in refs}
        parent_ids = [ref.object_id for ref in refs if ref.kind.value == "parent"]
        parents = await self.db_manager.get_collection("parents").find(
            {"_id": {"$in": parent_ids}}, {"teen_accounts": 1}
        ).to_list(length=None)
        for parent in parents:
            for teen_id in parent.get("teen_accounts") or []:
                if teen_id not in seen:
                    seen.add(teen_id)
                    refs.append(MemberRef.teen(teen_id))
        return refs

    async def expand_to_all(self, actor_parent_id: Any) -> Set[ObjectId]:
        return {ref.object_id for ref in await self.expand_to_all_refs(actor_parent_id)}

    async def resolve_shared_with(
        self, actor_parent_id: Any, member_ids: Iterable[Any], share_with_all: bool = False
    ) -> List[ObjectId]:
        """
        Compute the concrete share set to store on a resource.

        With ``share_with_all`` the explicit ids are ignored and replaced by the
        current expansion. Otherwise every explicit id must belong to the
        actor's family.

        Raises:
            ValidationError: an explicit id is malformed or outside the family
        """
        if share_with_all:
            expanded = await self.expand_to_all_refs(actor_parent_id)
            logger.debug("Expanded share-all for %s to %d members", actor_parent_id, len(expanded))
            return [ref.object_id for ref in expanded]

        requested = to_object_ids(member_ids, "shared_with")
        if not requested:
            return []
        allowed = await self.expand_to_all(actor_parent_id)
        outside = [oid for oid in requested if oid not in allowed]
        if outside:
            raise ValidationError(
                "Can only share with members of your family",
                field="shared_with",
                value=[str(oid) for oid in outside],
            )
        return requested
