"""
Tests for the merge request workflow.

Covers request validation, pending and already-merged conflicts in both
directions, recipient/requester authorization, compare-and-swap transitions
under concurrency, rollback of a failed merge, and best-effort notification.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import OperationFailure
import pytest

from family_hub.managers.family_errors import (
    ConflictError,
    EntityNotFound,
    InsufficientPermissions,
    InvalidStateTransition,
    ValidationError,
)
from family_hub.managers.family_graph import FamilyGraphManager
from family_hub.managers.membership_resolver import MembershipResolver
from family_hub.managers.merge_request_manager import MergeRequestManager
from family_hub.models.family_models import NotificationResult


@pytest.fixture
def manager(fake_db, notifier):
    return MergeRequestManager(db_manager=fake_db, notification_manager=notifier)


@pytest.fixture
def households(family):
    smith = family.parent(first_name="Pat", family_name="Smith")
    jones = family.parent(first_name="Sam", family_name="Jones")
    return smith, jones


class TestSendMergeRequest:
    @pytest.mark.asyncio
    async def test_creates_pending_request_and_notifies(self, manager, households, email_sender):
        smith, jones = households

        request = await manager.send_merge_request(smith["_id"], jones["email"].upper(), "Let's merge")

        assert request["status"] == "pending"
        assert request["recipient"] == jones["_id"]
        assert request["recipient_email"] == jones["email"]
        assert request["merge_completed"] is False
        email_sender.send.assert_awaited_once()
        assert email_sender.send.await_args.args[0] == jones["email"]
        assert email_sender.send.await_args.args[1] == "Family Merge Request"
        assert request["notification"]["email"]["sent"] is True

    @pytest.mark.asyncio
    async def test_self_merge_rejected(self, manager, households):
        smith, _ = households
        with pytest.raises(ValidationError):
            await manager.send_merge_request(smith["_id"], smith["email"])

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, manager, households):
        smith, _ = households
        with pytest.raises(EntityNotFound, match="No parent found"):
            await manager.send_merge_request(smith["_id"], "nobody@example.com")

    @pytest.mark.asyncio
    async def test_message_length_capped(self, manager, households):
        smith, jones = households
        with pytest.raises(ValidationError):
            await manager.send_merge_request(smith["_id"], jones["email"], "x" * 501)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_pending_request_conflicts_in_either_direction(self, manager, households, reverse):
        smith, jones = households
        await manager.send_merge_request(smith["_id"], jones["email"])

        sender, target = (jones, smith) if reverse else (smith, jones)
        with pytest.raises(ConflictError) as exc_info:
            await manager.send_merge_request(sender["_id"], target["email"])
        assert exc_info.value.context["reason"] == "pending_request_exists"

    @pytest.mark.asyncio
    async def test_already_merged_pair_conflicts(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        await manager.approve_merge_request(request["_id"], jones["_id"])

        with pytest.raises(ConflictError, match="already merged"):
            await manager.send_merge_request(jones["_id"], smith["email"])

    @pytest.mark.asyncio
    async def test_pair_linked_by_invitation_can_still_merge(self, manager, family, households):
        smith, jones = households
        family.link(smith, jones)
        child = family.child(smith)

        request = await manager.send_merge_request(smith["_id"], jones["email"])
        approved = await manager.approve_merge_request(request["_id"], jones["_id"])

        assert approved["merge_completed"] is True
        assert set(child["parents"]) == {smith["_id"], jones["_id"]}
        assert smith["family_members"] == [jones["_id"]]
        assert jones["family_members"] == [smith["_id"]]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_request(self, fake_db, households, email_sender, sms_sender):
        smith, jones = households
        notifier = MagicMock()
        notifier.notify = AsyncMock(side_effect=RuntimeError("provider exploded"))
        manager = MergeRequestManager(db_manager=fake_db, notification_manager=notifier)

        request = await manager.send_merge_request(smith["_id"], jones["email"])

        assert request["status"] == "pending"
        assert request["notification"] is None
        assert fake_db.get_collection("merge_requests").get(request["_id"]) is not None


class TestApproveMergeRequest:
    @pytest.mark.asyncio
    async def test_approve_merges_both_households(self, manager, fake_db, family, households, email_sender):
        smith, jones = households
        smith_child = family.child(smith)
        jones_child = family.child(jones)
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        email_sender.send.reset_mock()

        approved = await manager.approve_merge_request(request["_id"], jones["_id"], "Welcome!")

        assert approved["status"] == "approved"
        assert approved["merge_completed"] is True
        assert approved["response_message"] == "Welcome!"
        assert set(approved["merge_details"]["children_merged"]) == {str(smith_child["_id"]), str(jones_child["_id"])}
        assert jones["_id"] in smith["family_members"]
        assert smith["_id"] in jones["family_members"]

        resolver = MembershipResolver(fake_db)
        for parent in (smith, jones):
            members = await resolver.resolve_family_member_ids(parent["_id"])
            assert {smith_child["_id"], jones_child["_id"]} <= members

        email_sender.send.assert_awaited_once()
        assert email_sender.send.await_args.args[0] == smith["email"]
        assert email_sender.send.await_args.args[1] == "Family Merge Request Approved!"
        assert "2 children" in email_sender.send.await_args.args[2]

    @pytest.mark.asyncio
    async def test_rerunning_merge_after_approval_is_a_no_op(self, manager, fake_db, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        await manager.approve_merge_request(request["_id"], jones["_id"])

        again = await FamilyGraphManager(fake_db).merge_households(smith["_id"], jones["_id"])

        assert not again.changed
        assert smith["family_members"] == [jones["_id"]]
        assert jones["family_members"] == [smith["_id"]]

    @pytest.mark.asyncio
    async def test_only_recipient_may_approve(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])

        with pytest.raises(InsufficientPermissions):
            await manager.approve_merge_request(request["_id"], smith["_id"])

    @pytest.mark.asyncio
    async def test_terminal_state_cannot_be_approved(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        await manager.reject_merge_request(request["_id"], jones["_id"])

        with pytest.raises(InvalidStateTransition, match="already been rejected"):
            await manager.approve_merge_request(request["_id"], jones["_id"])

    @pytest.mark.asyncio
    async def test_concurrent_approvals_merge_exactly_once(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])

        results = await asyncio.gather(
            manager.approve_merge_request(request["_id"], jones["_id"]),
            manager.approve_merge_request(request["_id"], jones["_id"]),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateTransition)
        assert smith["family_members"] == [jones["_id"]]
        assert jones["family_members"] == [smith["_id"]]

    @pytest.mark.asyncio
    async def test_failed_merge_returns_request_to_pending(self, manager, fake_db, family, households):
        smith, jones = households
        child = family.child(smith)
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        fake_db.get_collection("events").fail_on["find"] = OperationFailure("events unavailable")

        with pytest.raises(Exception):
            await manager.approve_merge_request(request["_id"], jones["_id"])

        stored = fake_db.get_collection("merge_requests").get(request["_id"])
        assert stored["status"] == "pending"
        assert stored["merge_completed"] is False
        assert smith["family_members"] == []
        assert jones["family_members"] == []
        assert child["parents"] == [smith["_id"]]

        del fake_db.get_collection("events").fail_on["find"]
        approved = await manager.approve_merge_request(request["_id"], jones["_id"])
        assert approved["merge_completed"] is True

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_approval(self, fake_db, households, notifier, email_sender):
        smith, jones = households
        manager = MergeRequestManager(db_manager=fake_db, notification_manager=notifier)
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        email_sender.send.side_effect = RuntimeError("smtp down")

        approved = await manager.approve_merge_request(request["_id"], jones["_id"])

        assert approved["merge_completed"] is True
        result = NotificationResult.model_validate(approved["notification"])
        assert result.email.error == "smtp down"


class TestRejectAndCancel:
    @pytest.mark.asyncio
    async def test_reject_notifies_requester(self, manager, households, email_sender):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        email_sender.send.reset_mock()

        rejected = await manager.reject_merge_request(request["_id"], jones["_id"], "Not now")

        assert rejected["status"] == "rejected"
        assert smith["family_members"] == []
        assert email_sender.send.await_args.args[1] == "Family Merge Request Declined"

    @pytest.mark.asyncio
    async def test_only_recipient_may_reject(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        with pytest.raises(InsufficientPermissions):
            await manager.reject_merge_request(request["_id"], smith["_id"])

    @pytest.mark.asyncio
    async def test_cancel_by_requester_sends_nothing(self, manager, households, email_sender):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        email_sender.send.reset_mock()

        cancelled = await manager.cancel_merge_request(request["_id"], smith["_id"])

        assert cancelled["status"] == "cancelled"
        email_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_requester_may_cancel(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        with pytest.raises(InsufficientPermissions):
            await manager.cancel_merge_request(request["_id"], jones["_id"])

    @pytest.mark.asyncio
    async def test_new_request_allowed_after_cancel(self, manager, households):
        smith, jones = households
        request = await manager.send_merge_request(smith["_id"], jones["email"])
        await manager.cancel_merge_request(request["_id"], smith["_id"])

        again = await manager.send_merge_request(jones["_id"], smith["email"])

        assert again["status"] == "pending"


class TestListMergeRequests:
    @pytest.mark.asyncio
    async def test_lists_by_direction_and_status(self, manager, family, households):
        smith, jones = households
        third = family.parent()
        sent = await manager.send_merge_request(smith["_id"], jones["email"])
        received = await manager.send_merge_request(third["_id"], smith["email"])
        await manager.cancel_merge_request(received["_id"], third["_id"])

        assert [r["_id"] for r in await manager.list_merge_requests(smith["_id"], "sent")] == [sent["_id"]]
        assert [r["_id"] for r in await manager.list_merge_requests(smith["_id"], "received")] == [received["_id"]]
        assert len(await manager.list_merge_requests(smith["_id"])) == 2
        pending = await manager.list_merge_requests(smith["_id"], status="pending")
        assert [r["_id"] for r in pending] == [sent["_id"]]

    @pytest.mark.asyncio
    async def test_unknown_direction_rejected(self, manager, households):
        smith, _ = households
        with pytest.raises(ValidationError):
            await manager.list_merge_requests(smith["_id"], "sideways")
