"""Shared fixtures for the swapmarket test suite."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping

import pytest

from swapmarket.core.clock import SimClock
from swapmarket.core.enums import SlotStatus, SwapStatus
from swapmarket.core.errors import StoreUnavailable
from swapmarket.core.interfaces import (
    REQUESTS_TABLE,
    SLOTS_TABLE,
    IRecordStore,
    Record,
    RecordFilter,
)
from swapmarket.core.models import EventSlot
from swapmarket.marketplace import SwapMarketplace
from swapmarket.storage.memory import InMemoryRecordStore

BASE_TIME = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fault injection
# ---------------------------------------------------------------------------

@dataclass
class _Fault:
    method: str
    table: str | None
    remaining: int
    apply: bool


class FlakyStore:
    """Wraps a record store and raises ``StoreUnavailable`` on chosen calls.

    ``fail_on("conditional_update", SLOTS_TABLE, nth=2)`` fails the second
    slot update.  With ``apply=True`` the write reaches the inner store
    first, modelling a commit whose acknowledgement was lost.
    """

    def __init__(self, inner: IRecordStore) -> None:
        self.inner = inner
        self._faults: list[_Fault] = []

    def fail_on(
        self,
        method: str,
        table: str | None = None,
        *,
        nth: int = 1,
        apply: bool = False,
    ) -> None:
        self._faults.append(_Fault(method, table, nth, apply))

    def clear_faults(self) -> None:
        self._faults.clear()

    async def _call(self, method: str, table: str, *args: Any, **kwargs: Any) -> Any:
        for fault in list(self._faults):
            if fault.method != method or fault.table not in (None, table):
                continue
            fault.remaining -= 1
            if fault.remaining == 0:
                self._faults.remove(fault)
                if fault.apply:
                    await getattr(self.inner, method)(table, *args, **kwargs)
                raise StoreUnavailable(f"injected fault on {method}({table})")
        return await getattr(self.inner, method)(table, *args, **kwargs)

    async def get(self, table: str, record_id: str) -> Record | None:
        return await self._call("get", table, record_id)

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Record:
        return await self._call("insert", table, fields)

    async def conditional_update(self, table, record_id, expected, changes) -> int:
        return await self._call("conditional_update", table, record_id, expected, changes)

    async def conditional_delete(self, table, record_id, expected) -> int:
        return await self._call("conditional_delete", table, record_id, expected)

    async def list_by_filter(self, table, where, order_by, *, descending=False):
        return await self._call("list_by_filter", table, where, order_by, descending=descending)

    async def close(self) -> None:
        await self.inner.close()


# ---------------------------------------------------------------------------
# Clock / store / marketplace
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Return a SimClock starting at 2024-06-01 00:00 UTC."""
    return SimClock(start=datetime(2024, 6, 1, tzinfo=timezone.utc))


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    """Return a fresh in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def flaky_store(memory_store: InMemoryRecordStore) -> FlakyStore:
    """Return a fault-injecting wrapper around ``memory_store``."""
    return FlakyStore(memory_store)


@pytest.fixture
def market(memory_store: InMemoryRecordStore, sim_clock: SimClock) -> SwapMarketplace:
    """Marketplace over the in-memory store."""
    return SwapMarketplace(memory_store, clock=sim_clock)


@pytest.fixture
def flaky_market(flaky_store: FlakyStore, sim_clock: SimClock) -> SwapMarketplace:
    """Marketplace whose store can be told to fail."""
    return SwapMarketplace(flaky_store, clock=sim_clock)


# ---------------------------------------------------------------------------
# Slot factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_slot() -> Callable[..., Awaitable[EventSlot]]:
    """Factory creating slots through the service: ``await make_slot(market, "u1")``.

    Each call gets the next free hour so start-time ordering is predictable.
    """
    counter = {"n": 0}

    async def _make(
        market: SwapMarketplace,
        owner_id: str,
        *,
        swappable: bool = True,
        title: str | None = None,
        start: datetime | None = None,
        hours: int = 1,
    ) -> EventSlot:
        n = counter["n"]
        counter["n"] += 1
        start_time = start or BASE_TIME + timedelta(hours=n)
        return await market.create_slot(
            owner_id,
            title or f"{owner_id} slot {n}",
            start_time,
            start_time + timedelta(hours=hours),
            SlotStatus.SWAPPABLE if swappable else SlotStatus.BUSY,
        )

    return _make


# ---------------------------------------------------------------------------
# Invariant checks
# ---------------------------------------------------------------------------

async def assert_swap_invariants(store: IRecordStore) -> None:
    """Check slot/request consistency across the whole store.

    * a slot is SWAP_PENDING iff exactly one PENDING request references it,
      and its hold names that request;
    * no two PENDING requests share a slot;
    * every request references two distinct slots;
    * every slot has end > start.
    """
    slots = await store.list_by_filter(SLOTS_TABLE, RecordFilter(), "start_time")
    requests = await store.list_by_filter(REQUESTS_TABLE, RecordFilter(), "created_at")

    pending_refs: dict[str, list[str]] = {}
    for req in requests:
        assert req["requester_slot_id"] != req["target_slot_id"]
        if req["status"] == SwapStatus.PENDING.value:
            for slot_id in (req["requester_slot_id"], req["target_slot_id"]):
                pending_refs.setdefault(slot_id, []).append(req["id"])

    for slot_id, refs in pending_refs.items():
        assert len(refs) == 1, f"slot {slot_id} referenced by pending {refs}"

    for slot in slots:
        assert slot["end_time"] > slot["start_time"]
        refs = pending_refs.get(slot["id"], [])
        if slot["status"] == SlotStatus.SWAP_PENDING.value:
            assert refs == [slot["pending_request_id"]], (
                f"slot {slot['id']} pending without matching request"
            )
        else:
            assert refs == [], f"slot {slot['id']} is {slot['status']} but referenced by {refs}"
            assert slot["pending_request_id"] is None


@pytest.fixture
def check_invariants() -> Callable[[IRecordStore], Awaitable[None]]:
    """Return :func:`assert_swap_invariants` for use inside async tests."""
    return assert_swap_invariants
