"""Application facade: wires the store and components from ``Settings``.

Every public coroutine is one request/response operation; there is no
background work, retry queue or cache between callers and the store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator

from .core.clock import IClock, WallClock
from .core.config import Settings
from .core.enums import Decision, RequestDirection, SlotStatus
from .core.interfaces import IRecordStore
from .core.models import (
    EventSlot,
    Profile,
    ReconciliationReport,
    SwapRequest,
    SwapRequestView,
    SwapResolution,
)
from .storage.factory import create_record_store
from .storage.repos import ProfileRepository, SlotRepository, SwapRequestRepository
from .swaps.engine import SwapLifecycleEngine
from .swaps.queries import QueryProjector
from .swaps.reconciliation import SwapReconciler
from .swaps.slot_status import SlotStatusController
from .swaps.slots import SlotService

logger = logging.getLogger(__name__)


class SwapMarketplace:
    """Exposed operations of the swap marketplace.

    Parameters
    ----------
    store:
        Any :class:`IRecordStore` backend.
    clock:
        Time source shared by all components.
    orphan_grace:
        Age after which ``reconcile()`` releases holds with no request.
    """

    def __init__(
        self,
        store: IRecordStore,
        clock: IClock | None = None,
        orphan_grace: timedelta = timedelta(seconds=60),
    ) -> None:
        self._store = store
        self._clock = clock or WallClock()

        self.slots = SlotRepository(store)
        self.requests = SwapRequestRepository(store)
        self.profiles = ProfileRepository(store)

        self.controller = SlotStatusController(
            self.slots, self._clock, self.requests,
        )
        self.engine = SwapLifecycleEngine(
            self.slots, self.requests, self.controller, self._clock,
        )
        self.slot_service = SlotService(self.slots, self.controller, self._clock)
        self.projector = QueryProjector(self.slots, self.requests, self.profiles)
        self.reconciler = SwapReconciler(
            self.slots,
            self.requests,
            self.controller,
            self._clock,
            orphan_grace=orphan_grace,
        )

    @property
    def store(self) -> IRecordStore:
        return self._store

    # -- swaps ---------------------------------------------------------------

    async def propose_swap(
        self,
        requester_slot_id: str,
        target_slot_id: str,
        requester_id: str,
    ) -> SwapRequest:
        return await self.engine.propose(requester_slot_id, target_slot_id, requester_id)

    async def resolve_swap(
        self,
        request_id: str,
        decision: Decision | str,
        acting_user_id: str,
    ) -> SwapResolution:
        return await self.engine.resolve(request_id, decision, acting_user_id)

    async def reconcile(self, request_id: str | None = None) -> ReconciliationReport:
        """Repair one request, or sweep the whole store when no id is given."""
        if request_id is not None:
            return await self.reconciler.reconcile_request(request_id)
        return await self.reconciler.sweep()

    # -- read side -----------------------------------------------------------

    async def list_marketplace(self, excluding_user_id: str) -> list[EventSlot]:
        return await self.projector.list_marketplace(excluding_user_id)

    async def list_swappable_slots(self, user_id: str) -> list[EventSlot]:
        return await self.projector.list_swappable_slots(user_id)

    async def list_requests(
        self,
        user_id: str,
        direction: RequestDirection | str = RequestDirection.ALL,
    ) -> list[SwapRequestView]:
        return await self.projector.list_requests(user_id, direction)

    # -- slots and users -----------------------------------------------------

    async def create_slot(
        self,
        owner_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        status: SlotStatus | str = SlotStatus.BUSY,
    ) -> EventSlot:
        return await self.slot_service.create_slot(owner_id, title, start_time, end_time, status)

    async def list_user_slots(self, owner_id: str) -> list[EventSlot]:
        return await self.slot_service.list_user_slots(owner_id)

    async def set_swappable(self, slot_id: str, user_id: str, swappable: bool) -> EventSlot:
        return await self.slot_service.set_swappable(slot_id, user_id, swappable)

    async def delete_slot(self, slot_id: str, user_id: str) -> None:
        await self.slot_service.delete_slot(slot_id, user_id)

    async def upsert_profile(self, user_id: str, name: str = "", email: str = "") -> Profile:
        return await self.profiles.upsert(Profile(id=user_id, name=name, email=email))

    async def close(self) -> None:
        await self._store.close()


@asynccontextmanager
async def open_marketplace(
    settings: Settings,
    clock: IClock | None = None,
) -> AsyncIterator[SwapMarketplace]:
    """Connect the configured backend and yield a ready marketplace."""
    settings.validate_store()
    store = await create_record_store(settings.store)
    marketplace = SwapMarketplace(
        store,
        clock=clock,
        orphan_grace=timedelta(seconds=settings.swaps.orphan_grace_seconds),
    )
    logger.info("Marketplace opened (backend=%s)", settings.store.backend.value)
    try:
        yield marketplace
    finally:
        await marketplace.close()
