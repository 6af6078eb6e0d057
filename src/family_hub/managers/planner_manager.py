"""Family calendar events and household tasks."""

from typing import Any, Dict, List, Optional, Union

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from family_hub.database import db_manager
from family_hub.managers.family_errors import EntityNotFound, InsufficientPermissions, ValidationError
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.managers.sharing_resolver import SharingResolver
from family_hub.models.family_models import EventRequest, MemberRef, TaskRequest
from family_hub.utils.datetime_utils import utc_now
from family_hub.utils.error_handling import handle_errors, parse_request
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[PlannerManager]")


class PlannerManager:
    def __init__(self, db_manager: DatabaseManagerProtocol = None, sharing_resolver: SharingResolver = None) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.sharing_resolver = sharing_resolver or SharingResolver(self.db_manager)
        self.resolver = self.sharing_resolver.resolver
        self.logger = logger

    def _events(self):
        return self.db_manager.get_collection("events")

    def _tasks(self):
        return self.db_manager.get_collection("tasks")

    @handle_errors("create_event")
    async def create_event(self, actor_id: Any, request: Union[EventRequest, Dict[str, Any]]) -> Dict[str, Any]:
        payload = parse_request(EventRequest, request)
        actor_oid = to_object_id(actor_id, "parent_id")
        assigned_to = await self.sharing_resolver.resolve_shared_with(
            actor_oid, payload.assigned_to, payload.assigned_to_all
        )
        now = utc_now()
        event = payload.model_dump(exclude={"assigned_to"})
        event.update({"assigned_to": assigned_to, "created_by": actor_oid, "created_at": now, "updated_at": now})
        result = await self._events().insert_one(event)
        event["_id"] = result.inserted_id
        self.logger.info("Event %s created by %s for %d members", result.inserted_id, actor_oid, len(assigned_to))
        return event

    @handle_errors("update_event")
    async def update_event(self, event_id: Any, actor_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Creator-only partial update; the assignment snapshot is recomputed when assignment fields change."""
        event = await self._events().find_one({"_id": to_object_id(event_id, "event_id")})
        if not event:
            raise EntityNotFound("Event not found", entity="event", entity_id=event_id)
        actor_oid = to_object_id(actor_id, "parent_id")
        if event["created_by"] != actor_oid:
            raise InsufficientPermissions("Not authorized to update this event", actor_id=actor_oid)
        unknown = set(changes) - set(EventRequest.model_fields)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}", field="changes")

        current = {
            key: event.get(key) for key in set(EventRequest.model_fields) - {"assigned_to_all"} if event.get(key) is not None
        }
        current["assigned_to"] = [str(oid) for oid in event.get("assigned_to") or []]
        payload = parse_request(EventRequest, {**current, **changes})

        update = {key: getattr(payload, key) for key in changes if key != "assigned_to"}
        if "assigned_to" in changes or payload.assigned_to_all:
            update["assigned_to"] = await self.sharing_resolver.resolve_shared_with(
                actor_oid, payload.assigned_to, payload.assigned_to_all
            )
        update["updated_at"] = utc_now()
        return await self._events().find_one_and_update(
            {"_id": event["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
        )

    @handle_errors("list_events")
    async def list_events(self, actor_id: Any) -> List[Dict[str, Any]]:
        """Events created anywhere in the actor's family, plus those assigned to the actor, by start date."""
        actor_oid = to_object_id(actor_id, "member_id")
        family = list(await self.resolver.resolve_family_parent_ids(actor_oid))
        query = {"$or": [{"created_by": {"$in": family}}, {"assigned_to": actor_oid}]}
        return await self._events().find(query).sort("start_date", ASCENDING).to_list(length=None)

    @handle_errors("create_task")
    async def create_task(self, actor_id: Any, request: Union[TaskRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Create a task assigned to family members.

        ``assign_to_all`` snapshots every current family member; otherwise each
        reference must point at a member of the actor's family.
        """
        payload = parse_request(TaskRequest, request)
        actor_oid = to_object_id(actor_id, "parent_id")
        if payload.assign_to_all:
            assignees = await self.sharing_resolver.expand_to_all_refs(actor_oid)
        else:
            assignees = []
            seen = set()
            for ref in payload.assigned_to:
                if ref.object_id in seen:
                    continue
                if not await self.resolver.can_access_member(actor_oid, ref):
                    raise ValidationError(
                        "Can only assign tasks to members of your family", field="assigned_to", value=ref.id
                    )
                seen.add(ref.object_id)
                assignees.append(ref)

        now = utc_now()
        task = payload.model_dump(exclude={"assigned_to"})
        task.update(
            {
                "assigned_to": [ref.to_document() for ref in assignees],
                "status": "pending",
                "created_by": actor_oid,
                "created_at": now,
                "updated_at": now,
            }
        )
        result = await self._tasks().insert_one(task)
        task["_id"] = result.inserted_id
        self.logger.info("Task %s created by %s for %d members", result.inserted_id, actor_oid, len(assignees))
        return task

    @handle_errors("list_tasks")
    async def list_tasks(self, actor_id: Any, assignee: Optional[MemberRef] = None) -> List[Dict[str, Any]]:
        """Tasks the actor created, optionally narrowed to one assignee."""
        query: Dict[str, Any] = {"created_by": to_object_id(actor_id, "parent_id")}
        if assignee is not None:
            query["assigned_to"] = assignee.to_document()
        return await self._tasks().find(query).sort("created_at", DESCENDING).to_list(length=None)


planner_manager = PlannerManager()
