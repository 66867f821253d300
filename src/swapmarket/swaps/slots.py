"""Slot lifecycle around the swap state machine: create, list, toggle, delete."""

from __future__ import annotations

import logging
from datetime import datetime

from swapmarket.core.clock import IClock, WallClock
from swapmarket.core.enums import SlotStatus
from swapmarket.core.errors import ValidationError
from swapmarket.core.ids import as_utc, new_id
from swapmarket.core.models import EventSlot
from swapmarket.storage.repos import SlotRepository

from .slot_status import SlotStatusController

logger = logging.getLogger(__name__)

_INITIAL_STATUSES = frozenset({SlotStatus.BUSY, SlotStatus.SWAPPABLE})


def validate_time_range(start_time: datetime, end_time: datetime) -> tuple[datetime, datetime]:
    """Return both bounds as UTC; ``ValidationError`` unless end > start."""
    start = as_utc(start_time)
    end = as_utc(end_time)
    if end <= start:
        raise ValidationError("End time must be after start time")
    return start, end


class SlotService:
    """Owner-facing slot operations.

    Status changes go through :class:`SlotStatusController`; this class
    only adds creation, validation and listing.
    """

    def __init__(
        self,
        slots: SlotRepository,
        controller: SlotStatusController | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._slots = slots
        self._clock = clock or WallClock()
        self._controller = controller or SlotStatusController(slots, self._clock)

    async def create_slot(
        self,
        owner_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        status: SlotStatus | str = SlotStatus.BUSY,
    ) -> EventSlot:
        """Create a slot.  Validation happens before any write."""
        if not owner_id:
            raise ValidationError("owner_id is required")
        title = (title or "").strip()
        if not title:
            raise ValidationError("title is required")
        start, end = validate_time_range(start_time, end_time)
        try:
            status = SlotStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown slot status: {status!r}") from exc
        if status not in _INITIAL_STATUSES:
            raise ValidationError(f"A slot cannot be created as {status.value}")

        now = self._clock.now()
        slot = EventSlot(
            id=new_id(),
            owner_id=owner_id,
            title=title,
            start_time=start,
            end_time=end,
            status=status,
            created_at=now,
            updated_at=now,
        )
        await self._slots.add(slot)
        logger.info("Slot created: id=%s owner=%s status=%s", slot.id, owner_id, status.value)
        return slot

    async def list_user_slots(self, owner_id: str) -> list[EventSlot]:
        """All of the user's slots ordered by start time."""
        return await self._slots.list_by_owner(owner_id)

    async def set_swappable(self, slot_id: str, user_id: str, swappable: bool) -> EventSlot:
        return await self._controller.set_swappable(slot_id, user_id, swappable)

    async def delete_slot(self, slot_id: str, user_id: str) -> None:
        await self._controller.delete(slot_id, user_id)
