"""Slot status state machine.

Enforces the legal status edges of an event slot and which actor may drive
each one, and applies every change as a compare-and-swap on the slot's
observed ``status`` / ``owner_id`` / ``pending_request_id`` and
``resolved_by_request_id``.
"""

from __future__ import annotations

import logging
from typing import Any

from swapmarket.core.clock import IClock, WallClock
from swapmarket.core.enums import SlotStatus, TransitionActor
from swapmarket.core.errors import (
    InvalidTransition,
    NotAuthorized,
    SlotLocked,
    SlotNotFound,
    SwapConflict,
)
from swapmarket.core.models import EventSlot
from swapmarket.storage.repos import SlotRepository, SwapRequestRepository, slot_hold

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[SlotStatus, dict[SlotStatus, TransitionActor]] = {
    SlotStatus.BUSY: {
        SlotStatus.SWAPPABLE: TransitionActor.OWNER,
    },
    SlotStatus.SWAPPABLE: {
        SlotStatus.BUSY: TransitionActor.OWNER,
        SlotStatus.SWAP_PENDING: TransitionActor.ENGINE,  # proposal
    },
    SlotStatus.SWAP_PENDING: {
        SlotStatus.BUSY: TransitionActor.ENGINE,  # acceptance
        SlotStatus.SWAPPABLE: TransitionActor.ENGINE,  # rejection / release
    },
}

DELETABLE_STATUSES: frozenset[SlotStatus] = frozenset(
    {SlotStatus.BUSY, SlotStatus.SWAPPABLE}
)


def check_transition(
    current: SlotStatus,
    target: SlotStatus,
    actor: TransitionActor,
) -> None:
    """Raise ``InvalidTransition`` unless *actor* may move *current* -> *target*."""
    allowed = _VALID_TRANSITIONS.get(current, {})
    if target not in allowed:
        raise InvalidTransition(
            f"Invalid slot transition: {current.value} -> {target.value}"
        )
    if allowed[target] != actor:
        raise InvalidTransition(
            f"Slot transition {current.value} -> {target.value} is driven by "
            f"{allowed[target].value}, not {actor.value}"
        )


# ---------------------------------------------------------------------------
# SlotStatusController
# ---------------------------------------------------------------------------

class SlotStatusController:
    """Applies legal slot status changes through conditional writes.

    Parameters
    ----------
    slots:
        Slot repository over the shared record store.
    clock:
        Source of ``updated_at`` stamps.
    requests:
        Swap request repository.  When given, a slot whose last resolution
        is still PENDING (a resolution that stopped midway) cannot be
        deleted until it has been reconciled.
    """

    def __init__(
        self,
        slots: SlotRepository,
        clock: IClock | None = None,
        requests: SwapRequestRepository | None = None,
    ) -> None:
        self._slots = slots
        self._clock = clock or WallClock()
        self._requests = requests

    async def transition(
        self,
        slot: EventSlot,
        target: SlotStatus,
        *,
        actor: TransitionActor,
        pending_request_id: str | None = None,
        new_owner_id: str | None = None,
        resolving_request_id: str | None = None,
    ) -> EventSlot | None:
        """Move *slot* from its observed status to *target*.

        The write succeeds only if the stored slot still has the status,
        owner and hold observed in *slot*.  Returns the updated slot, or
        ``None`` when the compare failed (zero rows affected).

        ``pending_request_id`` is required when entering SWAP_PENDING and
        the hold is cleared on every other target.  ``new_owner_id`` is only
        accepted on the acceptance edge (SWAP_PENDING -> BUSY).
        ``resolving_request_id`` stamps the slot with the request whose accept
        or reject this write belongs to, so an interrupted resolution can be
        told apart from later changes to the slot.
        """
        check_transition(slot.status, target, actor)

        if target == SlotStatus.SWAP_PENDING and not pending_request_id:
            raise InvalidTransition("Entering SWAP_PENDING requires a request id")
        if new_owner_id is not None and not (
            slot.status == SlotStatus.SWAP_PENDING and target == SlotStatus.BUSY
        ):
            raise InvalidTransition("Ownership changes only on swap acceptance")
        if resolving_request_id is not None and slot.status != SlotStatus.SWAP_PENDING:
            raise InvalidTransition("Only a held slot can be written by a resolution")

        changes: dict[str, Any] = {
            "status": target,
            "pending_request_id": (
                pending_request_id if target == SlotStatus.SWAP_PENDING else None
            ),
            "updated_at": self._clock.now(),
        }
        if new_owner_id is not None:
            changes["owner_id"] = new_owner_id
        if resolving_request_id is not None:
            changes["resolved_by_request_id"] = resolving_request_id

        if not await self._slots.compare_and_set(slot.id, slot_hold(slot), changes):
            logger.info(
                "Slot CAS lost: id=%s expected status=%s hold=%s",
                slot.id,
                slot.status.value,
                slot.pending_request_id,
            )
            return None

        logger.debug(
            "Slot transition: id=%s %s -> %s (actor=%s)",
            slot.id,
            slot.status.value,
            target.value,
            actor.value,
        )
        return slot.model_copy(update=changes)

    # ------------------------------------------------------------------
    # Owner-driven operations
    # ------------------------------------------------------------------

    async def set_swappable(
        self,
        slot_id: str,
        user_id: str,
        swappable: bool,
    ) -> EventSlot:
        """Owner toggle BUSY <-> SWAPPABLE.  No-op if already there."""
        slot = await self._slots.require(slot_id)
        if slot.owner_id != user_id:
            raise NotAuthorized(f"User {user_id} does not own slot {slot_id}")

        target = SlotStatus.SWAPPABLE if swappable else SlotStatus.BUSY
        if slot.status == target:
            return slot

        updated = await self.transition(slot, target, actor=TransitionActor.OWNER)
        if updated is not None:
            return updated

        fresh = await self._slots.get(slot_id)
        if fresh is None:
            raise SlotNotFound(slot_id)
        if fresh.is_pending:
            raise InvalidTransition(
                f"Slot {slot_id} became SWAP_PENDING; owner cannot change it"
            )
        raise SwapConflict(f"Slot {slot_id} changed concurrently; reload and retry")

    async def delete(self, slot_id: str, user_id: str) -> None:
        """Delete a slot the user owns.

        ``SlotLocked`` while SWAP_PENDING, and while the last resolution
        that wrote the slot awaits reconciliation.
        """
        slot = await self._slots.require(slot_id)
        if slot.owner_id != user_id:
            raise NotAuthorized(f"User {user_id} does not own slot {slot_id}")
        if slot.status not in DELETABLE_STATUSES:
            raise SlotLocked(slot_id)
        if await self._awaits_reconciliation(slot):
            raise SlotLocked(slot_id)

        if await self._slots.delete_if(slot_id, slot_hold(slot)):
            logger.info("Slot deleted: id=%s owner=%s", slot_id, user_id)
            return

        fresh = await self._slots.get(slot_id)
        if fresh is None:
            raise SlotNotFound(slot_id)
        if fresh.is_pending:
            raise SlotLocked(slot_id)
        raise SwapConflict(f"Slot {slot_id} changed concurrently; reload and retry")

    async def _awaits_reconciliation(self, slot: EventSlot) -> bool:
        """True if the last resolution that wrote *slot* never finished."""
        if self._requests is None or slot.resolved_by_request_id is None:
            return False
        request = await self._requests.get(slot.resolved_by_request_id)
        return request is not None and not request.is_terminal
