"""Test marketplace listings and joined swap request views."""

import pytest

from swapmarket.core.enums import RequestDirection, SlotStatus, SwapStatus
from swapmarket.core.errors import ValidationError


class TestMarketplace:
    @pytest.mark.asyncio
    async def test_excludes_viewer_and_non_swappable(self, market, make_slot):
        mine = await make_slot(market, "alice")
        bobs = await make_slot(market, "bob")
        await make_slot(market, "bob", swappable=False)
        carols = await make_slot(market, "carol")

        listing = await market.list_marketplace("alice")

        assert [s.id for s in listing] == [bobs.id, carols.id]
        assert mine.id not in {s.id for s in listing}

    @pytest.mark.asyncio
    async def test_pending_slots_leave_the_marketplace(self, market, make_slot):
        s1 = await make_slot(market, "alice")
        s2 = await make_slot(market, "bob")
        s3 = await make_slot(market, "carol")
        await market.propose_swap(s1.id, s2.id, "alice")

        listing = await market.list_marketplace("dave")
        assert [s.id for s in listing] == [s3.id]

    @pytest.mark.asyncio
    async def test_accepted_slots_become_busy_for_new_owner(self, market, make_slot):
        s1 = await make_slot(market, "alice")
        s2 = await make_slot(market, "bob")
        request = await market.propose_swap(s1.id, s2.id, "alice")
        await market.resolve_swap(request.id, "accept", "bob")

        assert await market.list_marketplace("carol") == []
        owned = await market.list_user_slots("alice")
        assert [(s.id, s.status) for s in owned] == [(s2.id, SlotStatus.BUSY)]

    @pytest.mark.asyncio
    async def test_own_swappable_slots(self, market, make_slot):
        a1 = await make_slot(market, "alice")
        await make_slot(market, "alice", swappable=False)
        a3 = await make_slot(market, "alice")
        await make_slot(market, "bob")

        offers = await market.list_swappable_slots("alice")
        assert [s.id for s in offers] == [a1.id, a3.id]


class TestRequestViews:
    @pytest.mark.asyncio
    async def test_directions(self, market, make_slot):
        a1 = await make_slot(market, "alice")
        a2 = await make_slot(market, "alice")
        b1 = await make_slot(market, "bob")
        c1 = await make_slot(market, "carol")
        outgoing = await market.propose_swap(a1.id, b1.id, "alice")
        incoming = await market.propose_swap(c1.id, a2.id, "carol")

        out_views = await market.list_requests("alice", RequestDirection.OUTGOING)
        in_views = await market.list_requests("alice", "incoming")
        all_views = await market.list_requests("alice")

        assert [v.id for v in out_views] == [outgoing.id]
        assert [v.id for v in in_views] == [incoming.id]
        # newest first
        assert [v.id for v in all_views] == [incoming.id, outgoing.id]
        assert await market.list_requests("dave") == []

    @pytest.mark.asyncio
    async def test_unknown_direction(self, market):
        with pytest.raises(ValidationError, match="sideways"):
            await market.list_requests("alice", "sideways")

    @pytest.mark.asyncio
    async def test_view_joins_parties_and_slots(self, market, make_slot):
        await market.upsert_profile("alice", name="Alice", email="alice@example.com")
        await market.upsert_profile("bob", name="Bob")
        s1 = await make_slot(market, "alice")
        s2 = await make_slot(market, "bob")
        request = await market.propose_swap(s1.id, s2.id, "alice")

        (view,) = await market.list_requests("bob", RequestDirection.INCOMING)

        assert view.id == request.id
        assert view.status == SwapStatus.PENDING
        assert view.requester.name == "Alice"
        assert view.target_user.name == "Bob"
        assert view.requester_slot.id == s1.id
        assert view.target_slot.id == s2.id
        assert view.target_slot.status == SlotStatus.SWAP_PENDING

    @pytest.mark.asyncio
    async def test_missing_joins_are_none(self, market, make_slot):
        s1 = await make_slot(market, "alice")
        s2 = await make_slot(market, "bob")
        request = await market.propose_swap(s1.id, s2.id, "alice")
        await market.resolve_swap(request.id, "reject", "bob")
        await market.delete_slot(s2.id, "bob")

        (view,) = await market.list_requests("alice")

        assert view.status == SwapStatus.REJECTED
        assert view.resolved_at is not None
        assert view.requester is None
        assert view.target_slot is None
        assert view.requester_slot.id == s1.id
        assert view.requester_slot_id == s1.id
        assert view.target_slot_id == s2.id

    @pytest.mark.asyncio
    async def test_profile_upsert_updates(self, market):
        await market.upsert_profile("alice", name="Alice")
        await market.upsert_profile("alice", name="Alice Smith", email="a@example.com")

        profile = await market.profiles.get("alice")
        assert profile.name == "Alice Smith"
        assert profile.email == "a@example.com"
