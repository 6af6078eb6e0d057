"""Tests for symmetric, idempotent household linking and merge rollback."""

from bson import ObjectId
from pymongo.errors import OperationFailure
import pytest

from family_hub.managers.family_graph import FamilyGraphManager


@pytest.fixture
def graph(fake_db):
    return FamilyGraphManager(fake_db)


class TestLinkParents:
    @pytest.mark.asyncio
    async def test_link_is_symmetric(self, graph, family):
        a = family.parent()
        b = family.parent()

        added = await graph.link_parents(a["_id"], b["_id"])

        assert b["_id"] in a["family_members"]
        assert a["_id"] in b["family_members"]
        assert added == [(a["_id"], b["_id"]), (b["_id"], a["_id"])]

    @pytest.mark.asyncio
    async def test_relinking_is_a_no_op(self, graph, family):
        a = family.parent()
        b = family.parent()
        await graph.link_parents(a["_id"], b["_id"])

        added = await graph.link_parents(b["_id"], a["_id"])

        assert added == []
        assert a["family_members"] == [b["_id"]]
        assert b["family_members"] == [a["_id"]]

    @pytest.mark.asyncio
    async def test_repairs_one_sided_link(self, graph, family):
        a = family.parent()
        b = family.parent(family_members=[])
        a["family_members"].append(b["_id"])

        added = await graph.link_parents(a["_id"], b["_id"])

        assert added == [(b["_id"], a["_id"])]
        assert b["family_members"] == [a["_id"]]


class TestMergeHouseholds:
    @pytest.mark.asyncio
    async def test_merge_collects_children_and_events(self, graph, fake_db, family):
        a = family.parent()
        b = family.parent()
        a_child = family.child(a)
        b_child = family.child(b)
        family.child(family.parent())
        events = fake_db.get_collection("events")
        event_id = ObjectId()
        events.docs.append({"_id": event_id, "title": "Picnic", "created_by": a["_id"]})

        result = await graph.merge_households(a["_id"], b["_id"])

        assert set(result.children) == {a_child["_id"], b_child["_id"]}
        assert result.events == [event_id]
        assert set(a_child["parents"]) == {a["_id"], b["_id"]}
        assert set(b_child["parents"]) == {a["_id"], b["_id"]}

    @pytest.mark.asyncio
    async def test_merge_is_idempotent(self, graph, family):
        a = family.parent()
        b = family.parent()
        child = family.child(a)

        await graph.merge_households(a["_id"], b["_id"])
        second = await graph.merge_households(a["_id"], b["_id"])

        assert not second.changed
        assert a["family_members"] == [b["_id"]]
        assert b["family_members"] == [a["_id"]]
        assert sorted(child["parents"]) == sorted([a["_id"], b["_id"]])

    @pytest.mark.asyncio
    async def test_failure_undoes_partial_merge(self, graph, fake_db, family):
        a = family.parent()
        b = family.parent()
        child = family.child(a)
        fake_db.get_collection("events").fail_on["find"] = OperationFailure("events unavailable")

        with pytest.raises(OperationFailure):
            await graph.merge_households(a["_id"], b["_id"])

        assert a["family_members"] == []
        assert b["family_members"] == []
        assert child["parents"] == [a["_id"]]
        assert fake_db.logged_errors[0][1] == "merge_households"

    @pytest.mark.asyncio
    async def test_undo_keeps_links_that_existed_before(self, graph, fake_db, family):
        a = family.parent()
        b = family.parent()
        family.link(a, b)
        fake_db.get_collection("events").fail_on["find"] = OperationFailure("events unavailable")

        with pytest.raises(OperationFailure):
            await graph.merge_households(a["_id"], b["_id"])

        assert a["family_members"] == [b["_id"]]
        assert b["family_members"] == [a["_id"]]


class TestAttachTeen:
    @pytest.mark.asyncio
    async def test_attach_teen_is_idempotent(self, graph, family):
        parent = family.parent()
        teen_id = ObjectId()

        await graph.attach_teen(parent["_id"], teen_id)
        await graph.attach_teen(parent["_id"], teen_id)

        assert parent["teen_accounts"] == [teen_id]
