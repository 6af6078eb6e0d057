"""
Parent-to-minor invitations and teen account registration.

Lifecycle: ``pending -> verified -> used``, or ``-> expired`` from pending or
verified. A code is six random digits valid for 30 minutes; resending issues a
fresh code, clears the attempt counter and restarts the clock.

Every verification attempt is a conditional increment bounded by
``max_attempts``, and a matching code is counted and verified in the same
write. Concurrent guesses cannot exceed the limit, and a code verified on the
last attempt is never expired by a racing wrong guess.
"""

from datetime import datetime, time, timedelta, timezone
import secrets
from typing import Any, Dict, List, Optional, Union

from pymongo import DESCENDING, ReturnDocument

from family_hub.config import settings
from family_hub.database import db_manager
from family_hub.managers.credential_manager import CredentialManager, check_password, hash_password
from family_hub.managers.email import email_manager
from family_hub.managers.family_errors import (
    ConflictError,
    EntityExpired,
    EntityNotFound,
    InsufficientPermissions,
    InvalidStateTransition,
    RateLimitExceeded,
    ValidationError,
)
from family_hub.managers.family_graph import FamilyGraphManager
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import DatabaseManagerProtocol
from family_hub.managers.sms import sms_manager
from family_hub.models.family_models import (
    AGE_BRACKET_MESSAGES,
    AGE_BRACKETS,
    InvitationMethod,
    RegisterTeenRequest,
    SendTeenInvitationRequest,
    TeenInvitationStatus,
)
from family_hub.utils.datetime_utils import calculate_age, ensure_timezone_aware, is_expired, utc_now
from family_hub.utils.error_handling import ErrorContext, handle_errors, parse_request, run_best_effort
from family_hub.utils.object_ids import to_object_id

logger = get_logger(prefix="[TeenInvitationManager]")

COLLECTION = "teen_invitations"
PENDING = TeenInvitationStatus.PENDING.value
VERIFIED = TeenInvitationStatus.VERIFIED.value
USED = TeenInvitationStatus.USED.value
EXPIRED = TeenInvitationStatus.EXPIRED.value
OPEN_STATUSES = [PENDING, VERIFIED]


def generate_verification_code() -> str:
    """Six decimal digits, never starting with zero."""
    return str(secrets.randbelow(900000) + 100000)


def _public(invitation: Dict[str, Any]) -> Dict[str, Any]:
    """The invitation without its secret code."""
    return {key: value for key, value in invitation.items() if key != "verification_code"}


def _contact_filter(email: Optional[str], phone_number: Optional[str]) -> Dict[str, Any]:
    if email:
        return {"email": email.strip().lower()}
    if phone_number:
        return {"phone_number": phone_number.strip()}
    raise ValidationError("Please provide either email or phone number", field="contact")


def _invitation_contact_filter(email: Optional[str], phone_number: Optional[str]) -> Dict[str, Any]:
    """Match an invitation sent to either supplied contact."""
    if email and phone_number:
        return {"$or": [_contact_filter(email, None), _contact_filter(None, phone_number)]}
    return _contact_filter(email, phone_number)


class TeenInvitationManager:
    """Code-based invitations for dependent accounts."""

    def __init__(
        self,
        db_manager: DatabaseManagerProtocol = None,
        email_manager: Any = None,
        sms_manager: Any = None,
        graph_manager: FamilyGraphManager = None,
        credential_manager: CredentialManager = None,
    ) -> None:
        self.db_manager = db_manager or globals()["db_manager"]
        self.email_manager = email_manager or globals()["email_manager"]
        self.sms_manager = sms_manager or globals()["sms_manager"]
        self.graph_manager = graph_manager or FamilyGraphManager(self.db_manager)
        self.credential_manager = credential_manager or CredentialManager(self.db_manager)
        self.logger = logger

    def _invitations(self):
        return self.db_manager.get_collection(COLLECTION)

    def _new_expiry(self) -> datetime:
        return utc_now() + timedelta(minutes=settings.TEEN_INVITATION_EXPIRY_MINUTES)

    async def _mark_expired(self, invitation: Dict[str, Any], statuses: List[str] = OPEN_STATUSES) -> None:
        await self._invitations().update_one(
            {"_id": invitation["_id"], "status": {"$in": statuses}},
            {"$set": {"status": EXPIRED, "updated_at": utc_now()}},
        )

    def _is_expired(self, invitation: Dict[str, Any]) -> bool:
        return invitation["status"] == EXPIRED or is_expired(invitation.get("expires_at"))

    async def _deliver_code(self, invitation: Dict[str, Any], parent: Dict[str, Any]) -> Dict[str, Any]:
        """Send the code over the invitation's channel. Best-effort; returns the delivery record."""
        parent_name = " ".join(p for p in (parent.get("first_name"), parent.get("last_name")) if p) or "Your parent"
        code = invitation["verification_code"]
        if invitation["invitation_method"] == InvitationMethod.EMAIL.value:
            sender = lambda: self.email_manager.send_teen_invitation_email(  # noqa: E731
                invitation["email"],
                invitation["teen_name"],
                parent_name,
                code,
                settings.TEEN_INVITATION_EXPIRY_MINUTES,
            )
        else:
            sender = lambda: self.sms_manager.send_teen_invitation_sms(  # noqa: E731
                invitation["phone_number"], invitation["teen_name"], code, settings.TEEN_INVITATION_EXPIRY_MINUTES
            )
        sent, error = await run_best_effort(
            sender, ErrorContext(operation="teen_invitation_delivery", entity_id=str(invitation["_id"]))
        )
        delivery = {
            "method": invitation["invitation_method"],
            "sent": bool(sent) and error is None,
            "error": str(error) if error else (None if sent else "delivery failed"),
            "attempted_at": utc_now(),
        }
        await self._invitations().update_one({"_id": invitation["_id"]}, {"$set": {"delivery": delivery}})
        return delivery

    @handle_errors("send_teen_invitation")
    async def send_teen_invitation(
        self, parent_id: Any, request: Union[SendTeenInvitationRequest, Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Invite a minor by email or SMS.

        Raises:
            ValidationError: payload invalid
            EntityNotFound: parent does not exist
            ConflictError: a teen account already uses the contact, or an active invitation exists
        """
        payload = parse_request(SendTeenInvitationRequest, request)
        parent_oid = to_object_id(parent_id, "parent_id")
        parent = await self.db_manager.get_collection("parents").find_one({"_id": parent_oid})
        if not parent:
            raise EntityNotFound("Parent not found", entity="parent", entity_id=parent_oid)

        teens = self.db_manager.get_collection("teens")
        if payload.email and await teens.find_one({"email": payload.email}, {"_id": 1}):
            raise ConflictError("A teen account with this email already exists", reason="teen_exists")
        if payload.phone_number and await teens.find_one({"phone_number": payload.phone_number}, {"_id": 1}):
            raise ConflictError("A teen account with this phone number already exists", reason="teen_exists")

        if payload.invitation_method == InvitationMethod.EMAIL:
            contact = {"email": payload.email}
        else:
            contact = {"phone_number": payload.phone_number}
        existing = await self._invitations().find_one({**contact, "status": PENDING})
        if existing:
            if self._is_expired(existing):
                await self._mark_expired(existing)
            else:
                raise ConflictError(
                    "An active invitation already exists for this contact. "
                    "Please wait for it to expire or use the existing code.",
                    reason="pending_invitation_exists",
                    existing_id=existing["_id"],
                )

        now = utc_now()
        invitation = {
            "parent": parent_oid,
            "teen_name": payload.teen_name,
            "account_role": payload.account_role.value,
            "invitation_method": payload.invitation_method.value,
            "email": payload.email,
            "phone_number": payload.phone_number,
            "verification_code": generate_verification_code(),
            "status": PENDING,
            "expires_at": self._new_expiry(),
            "verified_at": None,
            "teen_account": None,
            "family_name": parent.get("family_name"),
            "attempt_count": 0,
            "max_attempts": settings.TEEN_INVITATION_MAX_ATTEMPTS,
            "created_at": now,
            "updated_at": now,
        }
        start_time = self.db_manager.log_query_start(COLLECTION, "insert_one", {"parent": str(parent_oid)})
        result = await self._invitations().insert_one(invitation)
        invitation["_id"] = result.inserted_id
        self.db_manager.log_query_success(COLLECTION, "insert_one", start_time, 1)

        invitation["delivery"] = await self._deliver_code(invitation, parent)
        self.logger.info(
            "Teen invitation %s sent by %s via %s",
            result.inserted_id,
            parent_oid,
            payload.invitation_method.value,
            extra={"invitation_id": str(result.inserted_id), "delivered": invitation["delivery"]["sent"]},
        )
        return _public(invitation)

    @handle_errors("verify_teen_code")
    async def verify_code(
        self, code: str, email: Optional[str] = None, phone_number: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Check a verification code against the latest invitation for a contact.

        Raises:
            EntityNotFound: no invitation for the contact
            ConflictError: invitation already used
            EntityExpired: past its deadline (persisted as expired)
            RateLimitExceeded: attempts exhausted (persisted as expired)
            ValidationError: wrong code; the attempt is still counted
        """
        if not code:
            raise ValidationError("Please provide a verification code", field="verification_code")
        contact = _invitation_contact_filter(email, phone_number)
        invitation = await self._invitations().find_one(contact, sort=[("created_at", DESCENDING)])
        if not invitation:
            raise EntityNotFound("Invalid verification code or contact information", entity="teen_invitation")

        if not self._check_usable(invitation):
            await self._raise_unusable(invitation)
        now = utc_now()
        attemptable = {
            "_id": invitation["_id"],
            "status": {"$in": OPEN_STATUSES},
            "attempt_count": {"$lt": invitation.get("max_attempts", settings.TEEN_INVITATION_MAX_ATTEMPTS)},
            "expires_at": {"$gt": now},
        }
        # A matching code is counted and verified in the same write.
        verified = await self._invitations().find_one_and_update(
            {**attemptable, "verification_code": str(code).strip()},
            {"$inc": {"attempt_count": 1}, "$set": {"status": VERIFIED, "verified_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if verified is not None:
            self.logger.info(
                "Teen invitation %s verified after %d attempts", verified["_id"], verified["attempt_count"]
            )
            return _public(verified)

        counted = await self._invitations().find_one_and_update(
            attemptable,
            {"$inc": {"attempt_count": 1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if counted is None:
            # Lost a race with another attempt or state change; report the current state.
            current = await self._invitations().find_one({"_id": invitation["_id"]})
            await self._raise_unusable(current)
        self.logger.info(
            "Wrong code for teen invitation %s (attempt %d/%d)",
            counted["_id"],
            counted["attempt_count"],
            counted["max_attempts"],
        )
        raise ValidationError("Invalid verification code", field="verification_code")

    def _check_usable(self, invitation: Dict[str, Any]) -> bool:
        return (
            invitation["status"] in OPEN_STATUSES
            and not self._is_expired(invitation)
            and invitation.get("attempt_count", 0) < invitation.get("max_attempts", settings.TEEN_INVITATION_MAX_ATTEMPTS)
        )

    async def _raise_unusable(self, invitation: Optional[Dict[str, Any]]) -> None:
        """Raise the failure describing why an invitation cannot take another attempt."""
        if invitation is None:
            raise EntityNotFound("Invitation not found", entity="teen_invitation")
        if invitation["status"] == USED:
            raise ConflictError("This invitation has already been used", reason="already_used")
        if self._is_expired(invitation):
            await self._mark_expired(invitation)
            raise EntityExpired(
                "Verification code expired",
                entity="teen_invitation",
                expired_at=ensure_timezone_aware(invitation["expires_at"]) if invitation.get("expires_at") else None,
            )
        max_attempts = invitation.get("max_attempts", settings.TEEN_INVITATION_MAX_ATTEMPTS)
        if invitation.get("attempt_count", 0) >= max_attempts:
            # a code verified on the final attempt stays registrable
            await self._mark_expired(invitation, statuses=[PENDING])
            self.logger.warning("Teen invitation %s locked after %d attempts", invitation["_id"], max_attempts)
            raise RateLimitExceeded(
                "Maximum verification attempts exceeded",
                action="verify_teen_code",
                limit=max_attempts,
                attempts=invitation.get("attempt_count", 0),
            )
        raise InvalidStateTransition(
            "Invitation cannot be verified", current_status=invitation["status"], expected_status=OPEN_STATUSES
        )

    async def _get_owned(self, invitation_id: Any, parent_id: Any) -> Dict[str, Any]:
        invitation = await self._invitations().find_one(
            {"_id": to_object_id(invitation_id, "invitation_id"), "parent": to_object_id(parent_id, "parent_id")}
        )
        if not invitation:
            raise EntityNotFound(
                "Invitation not found or you are not authorized", entity="teen_invitation", entity_id=invitation_id
            )
        return invitation

    @handle_errors("resend_teen_invitation")
    async def resend_teen_invitation(self, invitation_id: Any, parent_id: Any) -> Dict[str, Any]:
        """Issue a fresh code: attempts reset to 0, status back to pending, new 30 minute window."""
        invitation = await self._get_owned(invitation_id, parent_id)
        if invitation["status"] == USED:
            raise ConflictError("This invitation has already been used", reason="already_used")

        renewed = await self._invitations().find_one_and_update(
            {"_id": invitation["_id"], "status": {"$ne": USED}},
            {
                "$set": {
                    "verification_code": generate_verification_code(),
                    "expires_at": self._new_expiry(),
                    "status": PENDING,
                    "attempt_count": 0,
                    "verified_at": None,
                    "updated_at": utc_now(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if renewed is None:
            raise ConflictError("This invitation has already been used", reason="already_used")

        parent = await self.db_manager.get_collection("parents").find_one({"_id": invitation["parent"]}) or {}
        renewed["delivery"] = await self._deliver_code(renewed, parent)
        self.logger.info("Teen invitation %s resent", renewed["_id"])
        return _public(renewed)

    @handle_errors("cancel_teen_invitation")
    async def cancel_teen_invitation(self, invitation_id: Any, parent_id: Any) -> None:
        invitation = await self._get_owned(invitation_id, parent_id)
        if invitation["status"] == USED:
            raise InvalidStateTransition(
                "Cannot cancel an invitation that has been used", current_status=USED, expected_status=OPEN_STATUSES
            )
        result = await self._invitations().delete_one({"_id": invitation["_id"], "status": {"$ne": USED}})
        if result.deleted_count == 0:
            raise InvalidStateTransition("Cannot cancel an invitation that has been used", current_status=USED)
        self.logger.info("Teen invitation %s cancelled", invitation["_id"])

    @handle_errors("list_sent_teen_invitations")
    async def list_sent_teen_invitations(self, parent_id: Any) -> List[Dict[str, Any]]:
        invitations = await self._invitations().find({"parent": to_object_id(parent_id, "parent_id")}).sort(
            "created_at", DESCENDING
        ).to_list(length=None)
        return [_public(invitation) for invitation in invitations]

    @handle_errors("register_teen")
    async def register_teen(self, request: Union[RegisterTeenRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Create the teen account from a verified invitation.

        Raises:
            EntityNotFound: no verified invitation for the code and contact
            ConflictError: invitation already used, or contact already registered
            EntityExpired: invitation ran out after verification
            ValidationError: age outside the invitation's account role bracket
        """
        payload = parse_request(RegisterTeenRequest, request)
        contact = _invitation_contact_filter(payload.email, payload.phone_number)
        lookup = {"verification_code": payload.verification_code, **contact}

        invitation = await self._invitations().find_one({**lookup, "status": VERIFIED})
        if not invitation:
            if await self._invitations().find_one({**lookup, "status": USED}, {"_id": 1}):
                raise ConflictError("This invitation has already been used", reason="already_used")
            raise EntityNotFound(
                "Invalid or unverified invitation code. Please verify your code first.", entity="teen_invitation"
            )
        if is_expired(invitation.get("expires_at")):
            await self._mark_expired(invitation)
            raise EntityExpired(
                "This invitation has expired",
                entity="teen_invitation",
                expired_at=ensure_timezone_aware(invitation["expires_at"]),
            )

        role = invitation["account_role"]
        age = calculate_age(payload.date_of_birth)
        low, high = AGE_BRACKETS[role]
        if not low <= age <= high:
            raise ValidationError(
                AGE_BRACKET_MESSAGES[role], field="date_of_birth", value=age, constraint=f"{low}-{high}"
            )

        teens = self.db_manager.get_collection("teens")
        if payload.email and await teens.find_one({"email": payload.email}, {"_id": 1}):
            raise ConflictError("An account with this email already exists", reason="teen_exists")
        if payload.phone_number and await teens.find_one({"phone_number": payload.phone_number}, {"_id": 1}):
            raise ConflictError("An account with this phone number already exists", reason="teen_exists")

        now = utc_now()
        claimed = await self._invitations().find_one_and_update(
            {"_id": invitation["_id"], "status": VERIFIED},
            {"$set": {"status": USED, "used_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise ConflictError("This invitation has already been used", reason="already_used")

        teen = {
            "first_name": payload.first_name,
            "last_name": payload.last_name,
            "password_hash": hash_password(payload.password),
            "date_of_birth": datetime.combine(payload.date_of_birth, time.min, tzinfo=timezone.utc),
            "account_role": role,
            "parent": invitation["parent"],
            "family_name": invitation.get("family_name"),
            "notification_preference": "email" if payload.email else "sms",
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        # absent rather than null, so the partial unique index on email skips it
        if payload.email:
            teen["email"] = payload.email
        if payload.phone_number:
            teen["phone_number"] = payload.phone_number
        teen_id = None
        try:
            teen_id = (await teens.insert_one(teen)).inserted_id
            teen["_id"] = teen_id
            await self._invitations().update_one({"_id": invitation["_id"]}, {"$set": {"teen_account": teen_id}})
            await self.graph_manager.attach_teen(invitation["parent"], teen_id)
        except Exception:
            self.logger.error("Teen registration for invitation %s failed, rolling back", invitation["_id"], exc_info=True)
            if teen_id is not None:
                await teens.delete_one({"_id": teen_id})
                await self.db_manager.get_collection("parents").update_one(
                    {"_id": invitation["parent"]}, {"$pull": {"teen_accounts": teen_id}}
                )
            await self._invitations().update_one(
                {"_id": invitation["_id"], "status": USED},
                {"$set": {"status": VERIFIED, "teen_account": None, "updated_at": utc_now()}, "$unset": {"used_at": ""}},
            )
            raise

        self.logger.info(
            "Teen account %s registered under parent %s (%s, age %d)",
            teen_id,
            invitation["parent"],
            role,
            age,
            extra={"teen_id": str(teen_id), "invitation_id": str(invitation["_id"])},
        )
        return {key: value for key, value in teen.items() if key != "password_hash"}

    @handle_errors("authenticate_teen")
    async def authenticate_teen(
        self, password: str, email: Optional[str] = None, phone_number: Optional[str] = None
    ) -> Dict[str, Any]:
        """Check teen credentials; unknown contact and wrong password fail identically."""
        if not password:
            raise ValidationError("Please provide a password", field="password")
        teen = await self.db_manager.get_collection("teens").find_one(_contact_filter(email, phone_number))
        if not teen or not check_password(password, teen.get("password_hash")):
            raise InsufficientPermissions("Invalid credentials", required_party="teen")
        if not teen.get("is_active", True):
            raise InsufficientPermissions(
                "Your account has been deactivated. Please contact your parent.", actor_id=teen["_id"]
            )
        await self.db_manager.get_collection("teens").update_one({"_id": teen["_id"]}, {"$set": {"last_login": utc_now()}})
        return {key: value for key, value in teen.items() if key != "password_hash"}

    @handle_errors("change_teen_password")
    async def change_teen_password(self, teen_id: Any, current_password: str, new_password: str) -> None:
        if not await self.credential_manager.verify_password("teens", teen_id, current_password):
            raise ValidationError("Current password is incorrect", field="current_password")
        await self.credential_manager.set_password("teens", teen_id, new_password)


teen_invitation_manager = TeenInvitationManager()
