"""
Family messaging.

A message goes from a parent or teen to any member of the sender's family and
is delivered over the requested method. The stored message is the in-app copy;
email and SMS are attempted per request and their outcomes recorded
independently on ``delivery_status``.
"""

import html
from typing import Any, Dict, List, Set, Union

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from family_hub.database import db_manager
from family_hub.managers.family_errors import (
    EntityNotFound,
    InsufficientPermissions,
    ValidationError,
)
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.membership_resolver import MembershipResolver
from family_hub.managers.notification_manager import notification_manager
from family_hub.managers.protocols import DatabaseManagerProtocol, NotifierProtocol
from family_hub.models.family_models import (
    MESSAGE_BODY_MAX_LENGTH,
    MESSAGE_SUBJECT_MAX_LENGTH,
    DeliveryMethod,
    MemberKind,
    MemberRef,
)
from family_hub.utils.datetime_utils import utc_now
from family_hub.utils.error_handling import handle_errors
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[MessageManager]")

COLLECTION = "messages"
MAX_PAGE_SIZE = 100


def _display_name(doc: Dict[str, Any]) -> str:
    return doc.get("name") or " ".join(p for p in (doc.get("first_name"), doc.get("last_name")) if p) or "A family member"


def _email_html(sender_name: str, subject: str, body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>New Message from {html.escape(sender_name)}</h2>"
        f"<h3>{html.escape(subject)}</h3>"
        f'<p style="white-space: pre-wrap;">{html.escape(body)}</p>'
        "</div>"
    )


class MessageManager:
    """Send, list and manage messages between family members."""

    def __init__(
        self,
        db_manager: DatabaseManagerProtocol = None,
        notification_manager: NotifierProtocol = None,
        resolver: MembershipResolver = None,
    ) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.notification_manager = notification_manager or globals()["notification_manager"]
        self.resolver = resolver or MembershipResolver(self.db_manager)
        self.logger = logger

    def _messages(self):
        return self.db_manager.get_collection(COLLECTION)

    async def _family_of(self, ref: MemberRef, doc: Dict[str, Any]) -> Set[ObjectId]:
        """Closure parents a sender can reach: a teen uses the closure of its parent."""
        if ref.kind == MemberKind.PARENT:
            return await self.resolver.resolve_family_parent_ids(ref.object_id)
        if ref.kind == MemberKind.TEEN and doc.get("parent"):
            return await self.resolver.resolve_family_parent_ids(doc["parent"])
        return set()

    @handle_errors("send_message")
    async def send_message(
        self,
        sender: MemberRef,
        recipient: MemberRef,
        subject: str,
        body: str,
        delivery_method: Union[DeliveryMethod, str] = DeliveryMethod.IN_APP,
    ) -> Dict[str, Any]:
        """
        Send a message to a family member.

        Raises:
            ValidationError: empty or oversized subject/body, unknown method, child sender
            EntityNotFound: sender or recipient does not exist
            InsufficientPermissions: recipient is outside the sender's family
        """
        subject = (subject or "").strip()
        body = (body or "").strip()
        if not subject or not body:
            raise ValidationError("Subject and message are required", field="subject")
        if len(subject) > MESSAGE_SUBJECT_MAX_LENGTH:
            raise ValidationError(
                f"Subject cannot exceed {MESSAGE_SUBJECT_MAX_LENGTH} characters", field="subject"
            )
        if len(body) > MESSAGE_BODY_MAX_LENGTH:
            raise ValidationError(f"Message cannot exceed {MESSAGE_BODY_MAX_LENGTH} characters", field="body")
        try:
            method = DeliveryMethod(delivery_method)
        except ValueError as e:
            raise ValidationError(
                "Invalid delivery method. Must be one of: in-app, sms, email, all",
                field="delivery_method",
                value=delivery_method,
            ) from e
        if sender.kind == MemberKind.CHILD:
            raise ValidationError("Children cannot send messages", field="sender")

        sender_doc = await self.resolver.get_member(sender)
        recipient_doc = await self.resolver.get_member(recipient)
        family = await self._family_of(sender, sender_doc)
        if not self.resolver.owning_parent_ids(recipient, recipient_doc) & family:
            raise InsufficientPermissions(
                "You can only send messages to your family members", actor_id=sender.id, required_party="family"
            )

        sender_name = _display_name(sender_doc)
        text = f"{subject}\n\n{body}\n\n- {sender_name}"
        status = await self.notification_manager.deliver(
            method,
            recipient_doc,
            f"Family Message: {subject}",
            text,
            html=_email_html(sender_name, subject, body),
            sms_body=text,
        )

        now = utc_now()
        message = {
            "sender": sender.to_document(),
            "sender_name": sender_name,
            "recipient": recipient.to_document(),
            "recipient_name": _display_name(recipient_doc),
            "subject": subject,
            "body": body,
            "delivery_method": method.value,
            "delivery_status": status.model_dump(),
            "is_read": False,
            "read_at": None,
            "is_deleted": False,
            "created_at": now,
            "updated_at": now,
        }
        result = await self._messages().insert_one(message)
        message["_id"] = result.inserted_id
        self.logger.info(
            "Message %s from %s:%s to %s:%s via %s (email_sent=%s, sms_sent=%s)",
            result.inserted_id,
            sender.kind.value,
            sender.id,
            recipient.kind.value,
            recipient.id,
            method.value,
            status.email.sent,
            status.sms.sent,
        )
        return message

    @handle_errors("get_inbox")
    async def get_inbox(
        self, member: MemberRef, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> Dict[str, Any]:
        """Received messages, newest first, paginated."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}", field="limit")
        query: Dict[str, Any] = {"recipient": member.to_document(), "is_deleted": False}
        if unread_only:
            query["is_read"] = False
        total = await self._messages().count_documents(query)
        messages = await self._messages().find(query).sort("created_at", DESCENDING).skip(
            (page - 1) * limit
        ).limit(limit).to_list(length=limit)
        return {"messages": messages, "page": page, "limit": limit, "total": total, "pages": -(-total // limit)}

    @handle_errors("get_sent_messages")
    async def get_sent(self, member: MemberRef) -> List[Dict[str, Any]]:
        return await self._messages().find({"sender": member.to_document(), "is_deleted": False}).sort(
            "created_at", DESCENDING
        ).to_list(length=None)

    @handle_errors("get_conversation")
    async def get_conversation(self, member: MemberRef, other: MemberRef) -> List[Dict[str, Any]]:
        """Both directions between two members, oldest first."""
        await self.resolver.get_member(other)
        a, b = member.to_document(), other.to_document()
        query = {
            "is_deleted": False,
            "$or": [{"sender": a, "recipient": b}, {"sender": b, "recipient": a}],
        }
        return await self._messages().find(query).sort("created_at", ASCENDING).to_list(length=None)

    async def _load(self, message_id: Any) -> Dict[str, Any]:
        message = await self._messages().find_one({"_id": to_object_id(message_id, "message_id"), "is_deleted": False})
        if not message:
            raise EntityNotFound("Message not found", entity="message", entity_id=message_id)
        return message

    @handle_errors("mark_message_read")
    async def mark_as_read(self, message_id: Any, member: MemberRef) -> Dict[str, Any]:
        """Recipient only; marking an already read message is a no-op."""
        message = await self._load(message_id)
        if message["recipient"] != member.to_document():
            raise InsufficientPermissions("Not authorized to mark this message as read", actor_id=member.id)
        if message.get("is_read"):
            return message
        now = utc_now()
        return await self._messages().find_one_and_update(
            {"_id": message["_id"]},
            {
                "$set": {
                    "is_read": True,
                    "read_at": now,
                    "delivery_status.in_app.read": True,
                    "delivery_status.in_app.read_at": now,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    @handle_errors("delete_message")
    async def delete_message(self, message_id: Any, member: MemberRef) -> None:
        """Soft delete by the sender or the recipient."""
        message = await self._load(message_id)
        ref = member.to_document()
        if ref not in (message["sender"], message["recipient"]):
            raise InsufficientPermissions("Not authorized to delete this message", actor_id=member.id)
        now = utc_now()
        await self._messages().update_one(
            {"_id": message["_id"]},
            {"$set": {"is_deleted": True, "deleted_at": now, "deleted_by": ref, "updated_at": now}},
        )
        self.logger.info("Message %s deleted by %s:%s", message["_id"], member.kind.value, member.id)

    @handle_errors("get_unread_count")
    async def get_unread_count(self, member: MemberRef) -> int:
        return await self._messages().count_documents(
            {"recipient": member.to_document(), "is_read": False, "is_deleted": False}
        )


message_manager = MessageManager()
