"""Test engine behaviour when the store fails partway through a write sequence.

The fault-injecting store counts calls from the moment a fault is
registered, so faults set after ``propose_swap`` only see the resolution's
writes.
"""

from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from swapmarket.core.enums import SlotStatus, SwapStatus
from swapmarket.core.errors import PartialFailure, StoreUnavailable, SwapConflict
from swapmarket.core.interfaces import REQUESTS_TABLE, SLOTS_TABLE
from swapmarket.swaps.engine import (
    STEP_INSERT_REQUEST,
    STEP_REQUEST_STATUS,
    STEP_REQUESTER_SLOT,
    STEP_TARGET_SLOT,
)


def _partials(operation: str) -> float:
    return REGISTRY.get_sample_value(
        "swapmarket_partial_failures_total", {"operation": operation},
    ) or 0.0


async def _pair(market, make_slot):
    s1 = await make_slot(market, "alice")
    s2 = await make_slot(market, "bob")
    return s1, s2


async def _assert_untouched(market, s1, s2):
    for slot, owner in ((s1, "alice"), (s2, "bob")):
        stored = await market.slots.get(slot.id)
        assert stored.status == SlotStatus.SWAPPABLE
        assert stored.owner_id == owner
        assert stored.pending_request_id is None


# ---------------------------------------------------------------------------
# Proposal
# ---------------------------------------------------------------------------

class TestProposeCompensation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("applied", [False, True])
    async def test_target_hold_timeout_releases_everything(
        self, flaky_market, flaky_store, make_slot, check_invariants, applied,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=2, apply=applied)

        with pytest.raises(StoreUnavailable):
            await flaky_market.propose_swap(s1.id, s2.id, "alice")

        await _assert_untouched(flaky_market, s1, s2)
        assert await flaky_market.requests.list_pending() == []
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_insert_timeout_not_applied_releases_holds(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        flaky_store.fail_on("insert", REQUESTS_TABLE)

        with pytest.raises(StoreUnavailable):
            await flaky_market.propose_swap(s1.id, s2.id, "alice")

        await _assert_untouched(flaky_market, s1, s2)
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_insert_timeout_applied_is_confirmed(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        flaky_store.fail_on("insert", REQUESTS_TABLE, apply=True)

        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")

        assert request.status == SwapStatus.PENDING
        assert (await flaky_market.slots.get(s2.id)).pending_request_id == request.id
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_failed_release_is_partial_failure(
        self, flaky_market, flaky_store, make_slot,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        flaky_store.fail_on("insert", REQUESTS_TABLE)
        # updates 1 and 2 are the holds, 3 is the first release
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=3)
        before = _partials("propose")

        with pytest.raises(PartialFailure) as exc_info:
            await flaky_market.propose_swap(s1.id, s2.id, "alice")

        assert exc_info.value.failed_step == STEP_INSERT_REQUEST
        assert exc_info.value.applied == ()
        assert _partials("propose") == before + 1
        held = await flaky_market.slots.get(s1.id)
        assert held.pending_request_id == exc_info.value.request_id

    @pytest.mark.asyncio
    async def test_unknown_insert_outcome_is_partial_failure(
        self, flaky_market, flaky_store, make_slot,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        flaky_store.fail_on("insert", REQUESTS_TABLE)
        flaky_store.fail_on("get", REQUESTS_TABLE)

        with pytest.raises(PartialFailure) as exc_info:
            await flaky_market.propose_swap(s1.id, s2.id, "alice")
        assert exc_info.value.failed_step == STEP_INSERT_REQUEST

    @pytest.mark.asyncio
    async def test_orphaned_holds_are_swept_after_grace(
        self, flaky_market, flaky_store, make_slot, sim_clock, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        flaky_store.fail_on("insert", REQUESTS_TABLE)
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=3)
        with pytest.raises(PartialFailure):
            await flaky_market.propose_swap(s1.id, s2.id, "alice")

        early = await flaky_market.reconcile()
        assert early.released_slots == []

        sim_clock.set_time(sim_clock.now() + timedelta(minutes=5))
        report = await flaky_market.reconcile()

        assert sorted(report.released_slots) == sorted([s1.id, s2.id])
        await _assert_untouched(flaky_market, s1, s2)
        await check_invariants(flaky_store.inner)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolvePartialFailure:
    @pytest.mark.asyncio
    async def test_accept_stops_after_requester_slot(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=2)
        before = _partials("resolve")

        with pytest.raises(PartialFailure) as exc_info:
            await flaky_market.resolve_swap(request.id, "accept", "bob")

        err = exc_info.value
        assert err.request_id == request.id
        assert err.applied == (STEP_REQUESTER_SLOT,)
        assert err.failed_step == STEP_TARGET_SLOT
        assert _partials("resolve") == before + 1

        # A blind retry is refused rather than reported as success
        with pytest.raises(SwapConflict):
            await flaky_market.resolve_swap(request.id, "accept", "bob")

        report = await flaky_market.reconcile(request.id)
        assert report.completed_accepts == [request.id]

        s1_now = await flaky_market.slots.get(s1.id)
        s2_now = await flaky_market.slots.get(s2.id)
        assert (s1_now.owner_id, s1_now.status) == ("bob", SlotStatus.BUSY)
        assert (s2_now.owner_id, s2_now.status) == ("alice", SlotStatus.BUSY)
        assert (await flaky_market.requests.get(request.id)).status == SwapStatus.ACCEPTED
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_accept_stops_before_request_status(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")
        flaky_store.fail_on("conditional_update", REQUESTS_TABLE)

        with pytest.raises(PartialFailure) as exc_info:
            await flaky_market.resolve_swap(request.id, "accept", "bob")
        assert exc_info.value.applied == (STEP_REQUESTER_SLOT, STEP_TARGET_SLOT)
        assert exc_info.value.failed_step == STEP_REQUEST_STATUS

        report = await flaky_market.reconcile()
        assert report.completed_accepts == [request.id]
        stored = await flaky_market.requests.get(request.id)
        assert stored.status == SwapStatus.ACCEPTED
        assert stored.resolved_at is not None
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_lost_ack_on_request_status_needs_no_repair(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")
        flaky_store.fail_on("conditional_update", REQUESTS_TABLE, apply=True)

        with pytest.raises(PartialFailure):
            await flaky_market.resolve_swap(request.id, "accept", "bob")

        report = await flaky_market.reconcile(request.id)
        assert report.repaired == 0
        assert report.unresolved == []
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_reject_stops_after_requester_slot(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=2)

        with pytest.raises(PartialFailure):
            await flaky_market.resolve_swap(request.id, "reject", "bob")

        report = await flaky_market.reconcile(request.id)
        assert report.completed_rejects == [request.id]
        await _assert_untouched(flaky_market, s1, s2)
        assert (await flaky_market.requests.get(request.id)).status == SwapStatus.REJECTED
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_first_write_unavailable_leaves_request_decidable(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=1)

        with pytest.raises(PartialFailure) as exc_info:
            await flaky_market.resolve_swap(request.id, "accept", "bob")
        assert exc_info.value.applied == ()
        assert exc_info.value.failed_step == STEP_REQUESTER_SLOT

        # Nothing landed: the reconciler leaves the decision to the recipient
        report = await flaky_market.reconcile(request.id)
        assert report.repaired == 0
        assert (await flaky_market.requests.get(request.id)).status == SwapStatus.PENDING

        resolution = await flaky_market.resolve_swap(request.id, "accept", "bob")
        assert resolution.request.status == SwapStatus.ACCEPTED
        await check_invariants(flaky_store.inner)

    @pytest.mark.asyncio
    async def test_first_write_landed_despite_timeout(
        self, flaky_market, flaky_store, make_slot, check_invariants,
    ):
        s1, s2 = await _pair(flaky_market, make_slot)
        request = await flaky_market.propose_swap(s1.id, s2.id, "alice")
        flaky_store.fail_on("conditional_update", SLOTS_TABLE, nth=1, apply=True)

        with pytest.raises(PartialFailure):
            await flaky_market.resolve_swap(request.id, "accept", "bob")

        report = await flaky_market.reconcile(request.id)
        assert report.completed_accepts == [request.id]
        assert (await flaky_market.slots.get(s2.id)).owner_id == "alice"
        await check_invariants(flaky_store.inner)
