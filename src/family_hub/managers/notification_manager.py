"""
Notification dispatcher.

Delivers a message to one recipient over every channel their stored
preference selects, recording each channel's outcome on its own. A channel
failure never stops another channel from being attempted, and nothing raised
by a provider escapes ``notify`` or ``deliver``: callers treat delivery as a
best-effort side channel.
"""

from typing import Any, Dict, Optional, Set

from family_hub.managers.email import email_manager
from family_hub.managers.logging_manager import get_logger
from family_hub.managers.protocols import EmailSenderProtocol, SmsSenderProtocol
from family_hub.managers.sms import sms_manager
from family_hub.models.family_models import (
    ChannelStatus,
    DeliveryMethod,
    DeliveryStatus,
    InAppStatus,
    MemberKind,
    NotificationPreference,
    NotificationResult,
)
from family_hub.utils.datetime_utils import utc_now

logger = get_logger(prefix="[NotificationManager]")

DEFAULT_PREFERENCES: Dict[MemberKind, NotificationPreference] = {
    MemberKind.PARENT: NotificationPreference.EMAIL,
    MemberKind.TEEN: NotificationPreference.EMAIL,
    MemberKind.CHILD: NotificationPreference.NONE,
}

PREFERENCE_CHANNELS: Dict[NotificationPreference, Set[str]] = {
    NotificationPreference.EMAIL: {"email"},
    NotificationPreference.SMS: {"sms"},
    NotificationPreference.BOTH: {"email", "sms"},
    NotificationPreference.NONE: set(),
}

DELIVERY_METHOD_CHANNELS: Dict[DeliveryMethod, Set[str]] = {
    DeliveryMethod.IN_APP: {"in_app"},
    DeliveryMethod.EMAIL: {"email"},
    DeliveryMethod.SMS: {"sms"},
    DeliveryMethod.ALL: {"in_app", "email", "sms"},
}


class NotificationManager:
    """Per-recipient multi-channel delivery with independent outcome tracking."""

    def __init__(self, email_manager: EmailSenderProtocol = None, sms_manager: SmsSenderProtocol = None) -> None:
        self.email_manager = email_manager or globals()["email_manager"]
        self.sms_manager = sms_manager or globals()["sms_manager"]
        self.logger = logger

    @staticmethod
    def resolve_preference(recipient: Dict[str, Any], kind: MemberKind = MemberKind.PARENT) -> NotificationPreference:
        stored = recipient.get("notification_preference")
        try:
            return NotificationPreference(stored) if stored else DEFAULT_PREFERENCES[kind]
        except ValueError:
            logger.warning("Unknown notification preference %r, using default for %s", stored, kind.value)
            return DEFAULT_PREFERENCES[kind]

    async def notify(
        self,
        recipient: Dict[str, Any],
        subject: str,
        text: str,
        html: Optional[str] = None,
        kind: MemberKind = MemberKind.PARENT,
    ) -> NotificationResult:
        """
        Notify a recipient through the channels their preference selects.

        Args:
            recipient: Stored member document (email, phone_number, notification_preference)
            subject: Email subject
            text: Plain text body, also used for SMS
            html: Optional HTML body for email
            kind: Member kind, selects the default preference

        Returns:
            NotificationResult with one ChannelStatus per channel
        """
        preference = self.resolve_preference(recipient, kind)
        channels = PREFERENCE_CHANNELS[preference]
        result = NotificationResult(preference=preference)

        if "email" in channels:
            result.email = await self._attempt_email(recipient.get("email"), subject, text, html)
        if "sms" in channels:
            result.sms = await self._attempt_sms(recipient.get("phone_number"), f"{subject}: {text}")

        self.logger.info(
            "Notification '%s' for %s processed (preference=%s, email_sent=%s, sms_sent=%s)",
            subject,
            recipient.get("_id"),
            preference.value,
            result.email.sent,
            result.sms.sent,
            extra={"recipient_id": str(recipient.get("_id")), "preference": preference.value},
        )
        return result

    async def deliver(
        self,
        method: DeliveryMethod,
        recipient: Dict[str, Any],
        subject: str,
        text: str,
        html: Optional[str] = None,
        sms_body: Optional[str] = None,
    ) -> DeliveryStatus:
        """
        Deliver over an explicitly chosen method. In-app delivery is the stored
        record itself and always succeeds.
        """
        channels = DELIVERY_METHOD_CHANNELS[method]
        status = DeliveryStatus()
        if "in_app" in channels:
            status.in_app = InAppStatus(sent=True, sent_at=utc_now())
        if "email" in channels:
            status.email = await self._attempt_email(recipient.get("email"), subject, text, html)
        if "sms" in channels:
            status.sms = await self._attempt_sms(recipient.get("phone_number"), sms_body or f"{subject}: {text}")
        return status

    async def _attempt_email(
        self, address: Optional[str], subject: str, text: str, html: Optional[str]
    ) -> ChannelStatus:
        if not address:
            return ChannelStatus(attempted=False, error="Recipient has no email address")
        try:
            await self.email_manager.send(address, subject, text, html)
        except Exception as e:
            self.logger.warning("Email channel failed for %s: %s", address, e)
            return ChannelStatus(attempted=True, sent=False, error=str(e) or type(e).__name__)
        return ChannelStatus(attempted=True, sent=True, sent_at=utc_now())

    async def _attempt_sms(self, number: Optional[str], body: str) -> ChannelStatus:
        if not number:
            return ChannelStatus(attempted=False, error="Recipient has no phone number")
        try:
            await self.sms_manager.send(number, body)
        except Exception as e:
            self.logger.warning("SMS channel failed for %s: %s", number, e)
            return ChannelStatus(attempted=True, sent=False, error=str(e) or type(e).__name__)
        return ChannelStatus(attempted=True, sent=True, sent_at=utc_now())


notification_manager = NotificationManager()
