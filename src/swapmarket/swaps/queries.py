"""Read-side projections: marketplace listing and joined request views."""

from __future__ import annotations

from swapmarket.core.enums import RequestDirection, SlotStatus
from swapmarket.core.errors import ValidationError
from swapmarket.core.models import EventSlot, SwapRequestView
from swapmarket.storage.repos import ProfileRepository, SlotRepository, SwapRequestRepository


class QueryProjector:
    """Read-only joins; re-queried on every call."""

    def __init__(
        self,
        slots: SlotRepository,
        requests: SwapRequestRepository,
        profiles: ProfileRepository,
    ) -> None:
        self._slots = slots
        self._requests = requests
        self._profiles = profiles

    async def list_marketplace(self, excluding_user_id: str) -> list[EventSlot]:
        """SWAPPABLE slots of every other user, earliest first."""
        return await self._slots.list_by_status(
            SlotStatus.SWAPPABLE, excluding_owner_id=excluding_user_id,
        )

    async def list_swappable_slots(self, user_id: str) -> list[EventSlot]:
        """The user's own SWAPPABLE slots, i.e. what they can offer."""
        return await self._slots.list_by_status(SlotStatus.SWAPPABLE, owner_id=user_id)

    async def list_requests(
        self,
        user_id: str,
        direction: RequestDirection | str = RequestDirection.ALL,
    ) -> list[SwapRequestView]:
        """Requests involving the user, newest first, with parties and slots."""
        try:
            direction = RequestDirection(direction)
        except ValueError as exc:
            raise ValidationError(f"Unknown request direction: {direction!r}") from exc
        requests = await self._requests.list_for_user(user_id, direction)
        if not requests:
            return []

        user_ids: list[str] = []
        slot_ids: list[str] = []
        for req in requests:
            user_ids.extend((req.requester_id, req.target_user_id))
            slot_ids.extend(req.slot_ids())

        profiles = await self._profiles.get_many(user_ids)
        slots = await self._slots.get_many(slot_ids)

        return [
            SwapRequestView(
                id=req.id,
                status=req.status,
                requester_slot_id=req.requester_slot_id,
                target_slot_id=req.target_slot_id,
                created_at=req.created_at,
                resolved_at=req.resolved_at,
                requester=profiles.get(req.requester_id),
                target_user=profiles.get(req.target_user_id),
                requester_slot=slots.get(req.requester_slot_id),
                target_slot=slots.get(req.target_slot_id),
            )
            for req in requests
        ]
