"""Tests for per-channel notification delivery."""

import pytest

from family_hub.models.family_models import DeliveryMethod, MemberKind, NotificationPreference


def _recipient(**fields):
    recipient = {"_id": "r1", "email": "r1@example.com", "phone_number": "+15550002222"}
    recipient.update(fields)
    return recipient


class TestNotify:
    @pytest.mark.asyncio
    async def test_email_failure_does_not_block_sms(self, notifier, email_sender, sms_sender):
        email_sender.send.side_effect = ConnectionError("smtp refused")

        result = await notifier.notify(_recipient(notification_preference="both"), "Hello", "Body")

        assert result.preference is NotificationPreference.BOTH
        assert result.email.attempted is True
        assert result.email.sent is False
        assert result.email.error == "smtp refused"
        assert result.sms.sent is True
        assert result.any_sent
        sms_sender.send.assert_awaited_once_with("+15550002222", "Hello: Body")

    @pytest.mark.asyncio
    async def test_preference_none_sends_nothing(self, notifier, email_sender, sms_sender):
        result = await notifier.notify(_recipient(notification_preference="none"), "Hello", "Body")

        assert not result.email.attempted
        assert not result.sms.attempted
        email_sender.send.assert_not_awaited()
        sms_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_email_preference_passes_html(self, notifier, email_sender):
        await notifier.notify(_recipient(notification_preference="email"), "Hello", "Body", html="<p>Body</p>")

        email_sender.send.assert_awaited_once_with("r1@example.com", "Hello", "Body", "<p>Body</p>")

    @pytest.mark.asyncio
    async def test_missing_address_is_reported_not_raised(self, notifier, sms_sender):
        result = await notifier.notify(_recipient(notification_preference="sms", phone_number=None), "Hi", "Body")

        assert result.sms.attempted is False
        assert result.sms.error == "Recipient has no phone number"
        sms_sender.send.assert_not_awaited()

    @pytest.mark.parametrize(
        "kind, expected",
        [
            (MemberKind.PARENT, NotificationPreference.EMAIL),
            (MemberKind.TEEN, NotificationPreference.EMAIL),
            (MemberKind.CHILD, NotificationPreference.NONE),
        ],
    )
    def test_default_preference_per_kind(self, notifier, kind, expected):
        assert notifier.resolve_preference({}, kind) is expected

    def test_unknown_stored_preference_falls_back(self, notifier):
        assert notifier.resolve_preference({"notification_preference": "pigeon"}) is NotificationPreference.EMAIL


class TestDeliver:
    @pytest.mark.asyncio
    async def test_in_app_only(self, notifier, email_sender, sms_sender):
        status = await notifier.deliver(DeliveryMethod.IN_APP, _recipient(), "Subject", "Text")

        assert status.in_app.sent is True
        assert status.in_app.read is False
        assert not status.email.attempted
        assert not status.sms.attempted
        email_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_channels_are_independent(self, notifier, sms_sender):
        sms_sender.send.side_effect = RuntimeError("carrier rejected")

        status = await notifier.deliver(DeliveryMethod.ALL, _recipient(), "Subject", "Text", sms_body="short")

        assert status.in_app.sent is True
        assert status.email.sent is True
        assert status.sms.sent is False
        assert status.sms.error == "carrier rejected"
        sms_sender.send.assert_awaited_once_with("+15550002222", "short")
