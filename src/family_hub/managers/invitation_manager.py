"""
Parent-to-parent family invitations.

Lifecycle: ``pending -> accepted | declined | expired``; a cancelled invitation
is deleted outright. Expiry is lazy: whenever a pending invitation is read past
``expires_at`` it is persisted as ``expired`` before anything else happens, so
a stale token can never be used and later reads agree.

Accepting links both parents' ``family_members`` through the family graph,
the same idempotent union a merge performs.
"""

from datetime import timedelta
import secrets
from typing import Any, Dict, List, Optional, Union

from pymongo import DESCENDING, ReturnDocument

from family_hub.config import settings
from family_hub.database import db_manager
from family_hub.managers.email import email_manager
from family_hub.managers.family_errors import (
    ConflictError,
    EntityExpired,
    EntityNotFound,
    InsufficientPermissions,
    InvalidStateTransition,
    ValidationError,
)
from family_hub.managers.family_graph import FamilyGraphManager, MergeResult
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.models.family_models import InvitationStatus, ParentRole, RegistrationRequired, TeenInvitationStatus
from family_hub.utils.datetime_utils import ensure_timezone_aware, is_expired, utc_now
from family_hub.utils.error_handling import ErrorContext, handle_errors, run_best_effort
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[InvitationManager]")

COLLECTION = "invitations"
PENDING = InvitationStatus.PENDING.value
EXPIRED = InvitationStatus.EXPIRED.value
TOKEN_BYTES = 32


class InvitationManager:
    """Token-based invitations between parents."""

    def __init__(
        self,
        db_manager: DatabaseManagerProtocol = None,
        email_manager: Any = None,
        graph_manager: FamilyGraphManager = None,
    ) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.email_manager = email_manager or globals()["email_manager"]
        self.graph_manager = graph_manager or FamilyGraphManager(self.db_manager)
        self.logger = logger

    def _invitations(self):
        return self.db_manager.get_collection(COLLECTION)

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(TOKEN_BYTES)

    def build_accept_link(self, token: str) -> str:
        return f"{settings.FRONTEND_URL.rstrip('/')}/accept-invitation/{token}"

    async def _expire_if_stale(self, invitation: Dict[str, Any]) -> Dict[str, Any]:
        """Persist ``expired`` for a pending invitation past its deadline and return the current view."""
        if invitation["status"] == PENDING and is_expired(invitation.get("expires_at")):
            await self._invitations().update_one(
                {"_id": invitation["_id"], "status": PENDING},
                {"$set": {"status": EXPIRED, "updated_at": utc_now()}},
            )
            self.logger.info("Invitation %s expired on read", invitation["_id"])
            invitation = {**invitation, "status": EXPIRED}
        return invitation

    def _raise_if_unusable(self, invitation: Dict[str, Any]) -> None:
        if invitation["status"] == EXPIRED:
            raise EntityExpired(
                "This invitation has expired",
                entity="invitation",
                expired_at=ensure_timezone_aware(invitation["expires_at"]) if invitation.get("expires_at") else None,
            )
        if invitation["status"] != PENDING:
            raise InvalidStateTransition(
                f"This invitation has already been {invitation['status']}",
                current_status=invitation["status"],
                expected_status=[PENDING],
            )

    async def _find_by_token(self, token: str) -> Dict[str, Any]:
        if not token:
            raise ValidationError("Invitation token is required", field="token")
        invitation = await self._invitations().find_one({"token": token})
        if not invitation:
            raise EntityNotFound("Invitation not found", entity="invitation")
        return await self._expire_if_stale(invitation)

    @handle_errors("send_invitation")
    async def send_invitation(self, inviter_id: Any, invited_email: str, invited_role: str) -> Dict[str, Any]:
        """
        Invite another parent, by email, to link households.

        Email delivery is best-effort: the invitation exists and is listed
        in-app even when the email could not be sent.

        Raises:
            ValidationError: missing email, unknown role, or self-invite
            EntityNotFound: inviter does not exist
            ConflictError: invitee already linked, or an active invitation exists
        """
        inviter_oid = to_object_id(inviter_id, "inviter_id")
        email = (invited_email or "").strip().lower()
        if not email or not invited_role:
            raise ValidationError("Please provide email and role for the invitation", field="invited_email")
        try:
            role = ParentRole(invited_role)
        except ValueError as e:
            raise ValidationError(
                "Role must be one of: mom, dad, parent", field="invited_role", value=invited_role
            ) from e

        parents = self.db_manager.get_collection("parents")
        inviter = await parents.find_one({"_id": inviter_oid})
        if not inviter:
            raise EntityNotFound("Inviter not found", entity="parent", entity_id=inviter_oid)
        if (inviter.get("email") or "").lower() == email:
            raise ValidationError("You cannot invite yourself", field="invited_email")

        invitee = await parents.find_one({"email": email}, {"_id": 1})
        if invitee and invitee["_id"] in (inviter.get("family_members") or []):
            raise ConflictError("This parent is already part of your family", reason="already_linked")

        existing = await self._invitations().find_one(
            {"invited_by": inviter_oid, "invited_email": email, "status": PENDING}
        )
        if existing:
            existing = await self._expire_if_stale(existing)
            if existing["status"] == PENDING:
                raise ConflictError(
                    "An active invitation already exists for this email",
                    reason="pending_invitation_exists",
                    existing_id=existing["_id"],
                )

        now = utc_now()
        invitation = {
            "invited_by": inviter_oid,
            "invited_email": email,
            "invited_role": role.value,
            "family_name": inviter.get("family_name"),
            "token": self.generate_token(),
            "status": PENDING,
            "expires_at": now + timedelta(days=settings.INVITATION_EXPIRY_DAYS),
            "accepted_at": None,
            "accepted_by": None,
            "email_sent": False,
            "created_at": now,
            "updated_at": now,
        }
        start_time = self.db_manager.log_query_start(COLLECTION, "insert_one", {"invited_by": str(inviter_oid)})
        result = await self._invitations().insert_one(invitation)
        invitation["_id"] = result.inserted_id
        self.db_manager.log_query_success(COLLECTION, "insert_one", start_time, 1)

        inviter_name = " ".join(p for p in (inviter.get("first_name"), inviter.get("last_name")) if p)
        sent, error = await run_best_effort(
            lambda: self.email_manager.send_family_invitation_email(
                to_email=email,
                inviter_name=inviter_name or inviter.get("email", ""),
                family_name=inviter.get("family_name") or "",
                role=role.value,
                accept_link=self.build_accept_link(invitation["token"]),
                expires_at=invitation["expires_at"].strftime("%Y-%m-%d %H:%M UTC"),
            ),
            ErrorContext(operation="invitation_email", entity_id=str(result.inserted_id)),
        )
        invitation["email_sent"] = bool(sent) and error is None
        if invitation["email_sent"]:
            await self._invitations().update_one({"_id": result.inserted_id}, {"$set": {"email_sent": True}})
        else:
            self.logger.warning("Invitation %s created but email to %s was not delivered", result.inserted_id, email)

        self.logger.info(
            "Invitation %s sent by %s to %s as %s",
            result.inserted_id,
            inviter_oid,
            email,
            role.value,
            extra={"invitation_id": str(result.inserted_id), "inviter": str(inviter_oid)},
        )
        return invitation

    @handle_errors("get_invitation_by_token")
    async def get_invitation_by_token(self, token: str) -> Dict[str, Any]:
        """Look up a pending invitation; expired or answered invitations raise."""
        invitation = await self._find_by_token(token)
        self._raise_if_unusable(invitation)
        return invitation

    @handle_errors("accept_invitation")
    async def accept_invitation(
        self, token: str, acceptor_id: Optional[Any] = None
    ) -> Union[Dict[str, Any], RegistrationRequired]:
        """
        Accept an invitation.

        Returns:
            The accepted invitation, or ``RegistrationRequired`` when no account
            exists yet for the invited email (no placeholder account is created).

        Raises:
            EntityExpired: past its deadline (now persisted as expired)
            InvalidStateTransition: no longer pending, including a lost race
            InsufficientPermissions: acceptor is not the invited parent
        """
        invitation = await self._find_by_token(token)
        self._raise_if_unusable(invitation)

        parents = self.db_manager.get_collection("parents")
        invited_parent = await parents.find_one({"email": invitation["invited_email"]})
        if not invited_parent:
            self.logger.info("Invitation %s accepted before registration; redirecting", invitation["_id"])
            return RegistrationRequired(
                email=invitation["invited_email"],
                role=ParentRole(invitation["invited_role"]),
                family_name=invitation.get("family_name"),
                token=invitation["token"],
            )
        if acceptor_id is not None and invited_parent["_id"] != to_object_id(acceptor_id, "acceptor_id"):
            raise InsufficientPermissions(
                "This invitation was sent to a different account", actor_id=acceptor_id, required_party="invitee"
            )

        now = utc_now()
        accepted = await self._invitations().find_one_and_update(
            {"_id": invitation["_id"], "status": PENDING, "expires_at": {"$gt": now}},
            {
                "$set": {
                    "status": InvitationStatus.ACCEPTED.value,
                    "accepted_at": now,
                    "accepted_by": invited_parent["_id"],
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if accepted is None:
            current = await self._expire_if_stale(await self._invitations().find_one({"_id": invitation["_id"]}))
            self._raise_if_unusable(current)
            raise InvalidStateTransition("Invitation changed while accepting", current_status=current["status"])

        inviter_oid = invitation["invited_by"]
        journal = MergeResult()
        try:
            await self.graph_manager.link_parents(inviter_oid, invited_parent["_id"], journal=journal)
            await parents.update_one(
                {"_id": invited_parent["_id"]},
                {"$set": {"parent_role": invitation["invited_role"], "family_name": invitation.get("family_name")}},
            )
        except Exception:
            self.logger.error("Linking for invitation %s failed, restoring pending", invitation["_id"], exc_info=True)
            await self.graph_manager.unlink(journal.added_links)
            await self._invitations().update_one(
                {"_id": invitation["_id"], "status": InvitationStatus.ACCEPTED.value},
                {"$set": {"status": PENDING, "accepted_at": None, "accepted_by": None, "updated_at": utc_now()}},
            )
            raise

        inviter = await parents.find_one({"_id": inviter_oid}, {"family_members": 1})
        accepted["family_member_count"] = len((inviter or {}).get("family_members") or []) + 1
        self.logger.info(
            "Invitation %s accepted by %s; linked with %s",
            invitation["_id"],
            invited_parent["_id"],
            inviter_oid,
            extra={"invitation_id": str(invitation["_id"]), "new_links": len(journal.added_links)},
        )
        return accepted

    @handle_errors("decline_invitation")
    async def decline_invitation(self, token: str) -> Dict[str, Any]:
        """Decline a pending invitation."""
        invitation = await self._find_by_token(token)
        self._raise_if_unusable(invitation)
        declined = await self._invitations().find_one_and_update(
            {"_id": invitation["_id"], "status": PENDING},
            {"$set": {"status": InvitationStatus.DECLINED.value, "updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if declined is None:
            current = await self._invitations().find_one({"_id": invitation["_id"]}, {"status": 1})
            raise InvalidStateTransition(
                f"This invitation has already been {current['status'] if current else 'removed'}",
                current_status=current["status"] if current else None,
                expected_status=[PENDING],
            )
        self.logger.info("Invitation %s declined", invitation["_id"])
        return declined

    @handle_errors("cancel_invitation")
    async def cancel_invitation(self, invitation_id: Any, inviter_id: Any) -> None:
        """Delete a pending invitation; only its inviter may do so."""
        invitation_oid = to_object_id(invitation_id, "invitation_id")
        inviter_oid = to_object_id(inviter_id, "inviter_id")
        invitation = await self._invitations().find_one({"_id": invitation_oid, "invited_by": inviter_oid})
        if not invitation:
            raise EntityNotFound(
                "Invitation not found or you are not authorized to cancel it",
                entity="invitation",
                entity_id=invitation_oid,
            )
        if invitation["status"] != PENDING:
            raise InvalidStateTransition(
                f"Cannot cancel an invitation that has been {invitation['status']}",
                current_status=invitation["status"],
                expected_status=[PENDING],
            )
        result = await self._invitations().delete_one({"_id": invitation_oid, "status": PENDING})
        if result.deleted_count == 0:
            raise InvalidStateTransition("Invitation changed while cancelling", expected_status=[PENDING])
        self.logger.info("Invitation %s cancelled by %s", invitation_oid, inviter_oid)

    @handle_errors("list_sent_invitations")
    async def list_sent_invitations(self, inviter_id: Any) -> List[Dict[str, Any]]:
        inviter_oid = to_object_id(inviter_id, "inviter_id")
        invitations = await self._invitations().find({"invited_by": inviter_oid}).sort(
            "created_at", DESCENDING
        ).to_list(length=None)
        return [await self._expire_if_stale(invitation) for invitation in invitations]

    @handle_errors("list_received_invitations")
    async def list_received_invitations(self, email: str) -> List[Dict[str, Any]]:
        """Pending, unexpired invitations addressed to ``email``."""
        invitations = await self._invitations().find(
            {"invited_email": (email or "").strip().lower(), "status": PENDING}
        ).sort("created_at", DESCENDING).to_list(length=None)
        current = [await self._expire_if_stale(invitation) for invitation in invitations]
        return [invitation for invitation in current if invitation["status"] == PENDING]

    @handle_errors("expire_stale_invitations")
    async def expire_stale_invitations(self) -> Dict[str, int]:
        """Bulk-expire pending parent and teen invitations past their deadline."""
        now = utc_now()
        parent_result = await self._invitations().update_many(
            {"status": PENDING, "expires_at": {"$lt": now}},
            {"$set": {"status": EXPIRED, "updated_at": now}},
        )
        teen_result = await self.db_manager.get_collection("teen_invitations").update_many(
            {
                "status": {"$in": [TeenInvitationStatus.PENDING.value, TeenInvitationStatus.VERIFIED.value]},
                "expires_at": {"$lt": now},
            },
            {"$set": {"status": TeenInvitationStatus.EXPIRED.value, "updated_at": now}},
        )
        counts = {"invitations": parent_result.modified_count, "teen_invitations": teen_result.modified_count}
        self.logger.info("Expired stale invitations: %s", counts)
        return counts


invitation_manager = InvitationManager()
