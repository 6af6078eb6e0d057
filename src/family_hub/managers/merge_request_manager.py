"""
Merge request workflow.

A merge request is a directed edge requester -> recipient with the lifecycle
``pending -> approved | rejected | cancelled``. Terminal states are final.

Every transition out of ``pending`` is a conditional update on
``{_id, status: "pending"}``, so two requests racing to approve, reject or
cancel the same entity cannot both win: the loser observes
``InvalidStateTransition``.

Approval runs the household merge inside a transaction when the deployment
supports one. Otherwise the request is claimed first, the merge runs, and any
failure both undoes the merge journal and returns the request to ``pending``,
so an approved request always carries ``merge_completed=True``.
"""

from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from family_hub.config import settings
from family_hub.database import db_manager
from family_hub.managers.family_errors import (
    ConflictError,
    EntityNotFound,
    InsufficientPermissions,
    InvalidStateTransition,
    ValidationError,
)
from family_hub.managers.family_graph import FamilyGraphManager, MergeResult
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.notification_manager import notification_manager
from family_hub.managers.protocols import DatabaseManagerProtocol, NotifierProtocol
from family_hub.models.family_models import MergeDetails, MergeRequestStatus
from family_hub.utils.datetime_utils import utc_now
from family_hub.utils.error_handling import ErrorContext, handle_errors, run_best_effort
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[MergeRequestManager]")

COLLECTION = "merge_requests"
PENDING = MergeRequestStatus.PENDING.value


def _full_name(parent: Dict[str, Any]) -> str:
    return " ".join(part for part in (parent.get("first_name"), parent.get("last_name")) if part) or parent.get(
        "email", "A parent"
    )


def _pair_filter(parent_a: ObjectId, parent_b: ObjectId) -> Dict[str, Any]:
    return {
        "$or": [
            {"requester": parent_a, "recipient": parent_b},
            {"requester": parent_b, "recipient": parent_a},
        ]
    }


class MergeRequestManager:
    """State machine for linking two households."""

    def __init__(
        self,
        db_manager: DatabaseManagerProtocol = None,
        notification_manager: NotifierProtocol = None,
        graph_manager: FamilyGraphManager = None,
    ) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.notification_manager = notification_manager or globals()["notification_manager"]
        self.graph_manager = graph_manager or FamilyGraphManager(self.db_manager)
        self.logger = logger

    def _requests(self):
        return self.db_manager.get_collection(COLLECTION)

    async def _get_parent(self, parent_id: ObjectId) -> Dict[str, Any]:
        parent = await self.db_manager.get_collection("parents").find_one({"_id": parent_id})
        if not parent:
            raise EntityNotFound("Parent not found", entity="parent", entity_id=parent_id)
        return parent

    async def _get_request(self, request_id: Any) -> Dict[str, Any]:
        request_oid = to_object_id(request_id, "request_id")
        request = await self._requests().find_one({"_id": request_oid})
        if not request:
            raise EntityNotFound("Merge request not found", entity="merge_request", entity_id=request_oid)
        return request

    @staticmethod
    def _ensure_pending(request: Dict[str, Any]) -> None:
        if request["status"] != PENDING:
            raise InvalidStateTransition(
                f"This request has already been {request['status']}",
                current_status=request["status"],
                expected_status=[PENDING],
            )

    async def _transition_from_pending(
        self, request: Dict[str, Any], changes: Dict[str, Any], session: Any = None
    ) -> Dict[str, Any]:
        """Compare-and-swap out of ``pending``; raises if another caller got there first."""
        updated = await self._requests().find_one_and_update(
            {"_id": request["_id"], "status": PENDING},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            current = await self._requests().find_one({"_id": request["_id"]}, {"status": 1}, session=session)
            current_status = current["status"] if current else None
            self.logger.info(
                "Lost transition race on merge request %s (now %s)",
                request["_id"],
                current_status,
                extra={"request_id": str(request["_id"]), "attempted_status": changes.get("status")},
            )
            raise InvalidStateTransition(
                f"This request has already been {current_status}",
                current_status=current_status,
                expected_status=[PENDING],
            )
        return updated

    async def _notify(self, request_id: ObjectId, recipient: Dict[str, Any], subject: str, text: str) -> Optional[Dict]:
        """Notify and record the per-channel outcome on the request. Never raises."""

        async def send_and_record():
            result = await self.notification_manager.notify(recipient, subject, text)
            outcome = result.model_dump()
            await self._requests().update_one({"_id": request_id}, {"$set": {"notification": outcome}})
            return outcome

        outcome, _ = await run_best_effort(
            send_and_record, ErrorContext(operation="merge_request_notification", entity_id=str(request_id))
        )
        return outcome

    @handle_errors("send_merge_request")
    async def send_merge_request(
        self, requester_id: Any, recipient_email: str, message: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a pending merge request from a parent to the parent owning ``recipient_email``.

        Raises:
            ValidationError: missing email, self-merge, or an over-long message
            EntityNotFound: requester or recipient does not exist
            ConflictError: a pending request exists in either direction, or the pair is already merged
        """
        requester_oid = to_object_id(requester_id, "requester_id")
        email = (recipient_email or "").strip().lower()
        if not email:
            raise ValidationError("Partner email is required", field="recipient_email")
        message = (message or "").strip()
        if len(message) > settings.MERGE_REQUEST_MESSAGE_MAX_LENGTH:
            raise ValidationError(
                "Message is too long",
                field="message",
                constraint=f"max_length={settings.MERGE_REQUEST_MESSAGE_MAX_LENGTH}",
            )

        requester = await self._get_parent(requester_oid)
        if (requester.get("email") or "").lower() == email:
            raise ValidationError("You cannot send a merge request to yourself", field="recipient_email")

        recipient = await self.db_manager.get_collection("parents").find_one({"email": email})
        if not recipient:
            raise EntityNotFound("No parent found with this email address", entity="parent", entity_id=email)
        recipient_oid = recipient["_id"]

        pending = await self._requests().find_one({**_pair_filter(requester_oid, recipient_oid), "status": PENDING})
        if pending:
            raise ConflictError(
                "There is already a pending merge request between you and this partner",
                reason="pending_request_exists",
                existing_id=pending["_id"],
            )

        completed = await self._requests().find_one(
            {
                **_pair_filter(requester_oid, recipient_oid),
                "status": MergeRequestStatus.APPROVED.value,
                "merge_completed": True,
            }
        )
        if completed:
            raise ConflictError("Your families are already merged", reason="already_merged")

        now = utc_now()
        request_doc = {
            "requester": requester_oid,
            "recipient": recipient_oid,
            "recipient_email": email,
            "status": PENDING,
            "message": message,
            "responded_at": None,
            "response_message": None,
            "merge_completed": False,
            "merge_details": None,
            "created_at": now,
            "updated_at": now,
        }
        start_time = self.db_manager.log_query_start(COLLECTION, "insert_one", {"requester": str(requester_oid)})
        result = await self._requests().insert_one(request_doc)
        request_doc["_id"] = result.inserted_id
        self.db_manager.log_query_success(COLLECTION, "insert_one", start_time, 1, f"request {result.inserted_id}")

        self.logger.info(
            "Merge request %s sent from %s to %s",
            result.inserted_id,
            requester_oid,
            recipient_oid,
            extra={"request_id": str(result.inserted_id), "requester": str(requester_oid), "recipient": email},
        )

        text = f"{_full_name(requester)} has sent you a family merge request."
        if message:
            text += f" Message: {message}"
        request_doc["notification"] = await self._notify(
            result.inserted_id, recipient, "Family Merge Request", text
        )
        return request_doc

    @handle_errors("list_merge_requests")
    async def list_merge_requests(
        self, parent_id: Any, direction: str = "all", status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List requests a parent sent, received, or both, newest first."""
        parent_oid = to_object_id(parent_id, "parent_id")
        if direction == "sent":
            query: Dict[str, Any] = {"requester": parent_oid}
        elif direction == "received":
            query = {"recipient": parent_oid}
        elif direction == "all":
            query = {"$or": [{"requester": parent_oid}, {"recipient": parent_oid}]}
        else:
            raise ValidationError("Direction must be one of: sent, received, all", field="direction", value=direction)
        if status is not None:
            if status not in {s.value for s in MergeRequestStatus}:
                raise ValidationError("Unknown merge request status", field="status", value=status)
            query["status"] = status
        return await self._requests().find(query).sort("created_at", DESCENDING).to_list(length=None)

    @handle_errors("approve_merge_request")
    async def approve_merge_request(
        self, request_id: Any, recipient_id: Any, response_message: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Approve a pending request and merge the two households as one unit.

        Raises:
            EntityNotFound: unknown request
            InsufficientPermissions: actor is not the recipient
            InvalidStateTransition: request is not pending, including a lost race
        """
        recipient_oid = to_object_id(recipient_id, "recipient_id")
        request = await self._get_request(request_id)
        if request["recipient"] != recipient_oid:
            raise InsufficientPermissions(
                "You are not authorized to approve this request", actor_id=recipient_oid, required_party="recipient"
            )
        self._ensure_pending(request)

        now = utc_now()
        claim = {
            "status": MergeRequestStatus.APPROVED.value,
            "responded_at": now,
            "response_message": response_message or "",
            "merge_completed": False,
            "updated_at": now,
        }

        if getattr(self.db_manager, "transactions_supported", False):
            approved, merge = await self._approve_in_transaction(request, claim)
        else:
            self.logger.debug("Database does not support transactions; approving with compensation")
            approved, merge = await self._approve_with_compensation(request, claim)

        self.logger.info(
            "Merge request %s approved: %d children, %d events merged",
            request["_id"],
            len(merge.children),
            len(merge.events),
            extra={
                "request_id": str(request["_id"]),
                "requester": str(request["requester"]),
                "recipient": str(request["recipient"]),
            },
        )

        recipient = await self._get_parent(recipient_oid)
        requester = await self.db_manager.get_collection("parents").find_one({"_id": request["requester"]})
        if requester:
            approved["notification"] = await self._notify(
                request["_id"],
                requester,
                "Family Merge Request Approved!",
                f"{_full_name(recipient)} has approved your family merge request. "
                f"{len(merge.children)} children and {len(merge.events)} events have been merged.",
            )
        return approved

    def _completion(self, merge: MergeResult) -> Dict[str, Any]:
        details = MergeDetails(
            children_merged=[str(cid) for cid in merge.children],
            events_merged=[str(eid) for eid in merge.events],
            merged_at=utc_now(),
        )
        return {"merge_completed": True, "merge_details": details.model_dump(), "updated_at": details.merged_at}

    async def _approve_in_transaction(self, request: Dict[str, Any], claim: Dict[str, Any]):
        session = await self.db_manager.client.start_session()
        try:
            async with session.start_transaction():
                await self._transition_from_pending(request, claim, session=session)
                merge = await self.graph_manager.merge_households(
                    request["requester"], request["recipient"], session=session
                )
                approved = await self._requests().find_one_and_update(
                    {"_id": request["_id"]},
                    {"$set": self._completion(merge)},
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
        finally:
            await session.end_session()
        return approved, merge

    async def _approve_with_compensation(self, request: Dict[str, Any], claim: Dict[str, Any]):
        await self._transition_from_pending(request, claim)
        merge: Optional[MergeResult] = None
        try:
            merge = await self.graph_manager.merge_households(request["requester"], request["recipient"])
            approved = await self._requests().find_one_and_update(
                {"_id": request["_id"], "status": MergeRequestStatus.APPROVED.value, "merge_completed": False},
                {"$set": self._completion(merge)},
                return_document=ReturnDocument.AFTER,
            )
            if approved is None:
                raise InvalidStateTransition(
                    "Merge request changed while approving", expected_status=[MergeRequestStatus.APPROVED.value]
                )
        except Exception:
            self.logger.error("Merge for request %s failed, returning it to pending", request["_id"], exc_info=True)
            if merge is not None:
                await self.graph_manager.undo_merge(merge)
            await self._requests().update_one(
                {"_id": request["_id"], "status": MergeRequestStatus.APPROVED.value, "merge_completed": False},
                {
                    "$set": {"status": PENDING, "updated_at": utc_now()},
                    "$unset": {"responded_at": "", "response_message": ""},
                },
            )
            raise
        return approved, merge

    @handle_errors("reject_merge_request")
    async def reject_merge_request(
        self, request_id: Any, recipient_id: Any, response_message: Optional[str] = None
    ) -> Dict[str, Any]:
        """Reject a pending request (recipient only) and tell the requester."""
        recipient_oid = to_object_id(recipient_id, "recipient_id")
        request = await self._get_request(request_id)
        if request["recipient"] != recipient_oid:
            raise InsufficientPermissions(
                "You are not authorized to reject this request", actor_id=recipient_oid, required_party="recipient"
            )
        self._ensure_pending(request)

        now = utc_now()
        rejected = await self._transition_from_pending(
            request,
            {
                "status": MergeRequestStatus.REJECTED.value,
                "responded_at": now,
                "response_message": response_message or "",
                "updated_at": now,
            },
        )
        self.logger.info("Merge request %s rejected by %s", request["_id"], recipient_oid)

        recipient = await self._get_parent(recipient_oid)
        requester = await self.db_manager.get_collection("parents").find_one({"_id": request["requester"]})
        if requester:
            text = f"{_full_name(recipient)} has declined your family merge request."
            if response_message:
                text += f" Response: {response_message}"
            rejected["notification"] = await self._notify(
                request["_id"], requester, "Family Merge Request Declined", text
            )
        return rejected

    @handle_errors("cancel_merge_request")
    async def cancel_merge_request(self, request_id: Any, requester_id: Any) -> Dict[str, Any]:
        """Cancel a pending request (requester only). No notification is sent."""
        requester_oid = to_object_id(requester_id, "requester_id")
        request = await self._get_request(request_id)
        if request["requester"] != requester_oid:
            raise InsufficientPermissions(
                "You are not authorized to cancel this request", actor_id=requester_oid, required_party="requester"
            )
        self._ensure_pending(request)

        cancelled = await self._transition_from_pending(
            request, {"status": MergeRequestStatus.CANCELLED.value, "updated_at": utc_now()}
        )
        self.logger.info("Merge request %s cancelled by requester %s", request["_id"], requester_oid)
        return cancelled


merge_request_manager = MergeRequestManager()
