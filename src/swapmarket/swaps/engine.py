"""Swap lifecycle engine: proposal and resolution of slot swaps.

The backing store only offers per-record compare-and-swap, so the engine
builds each multi-record operation from ordered conditional writes:

*  **propose** pre-allocates the request id and uses it as a hold token:
   both slots are flipped SWAPPABLE -> SWAP_PENDING with
   ``pending_request_id=<id>``, then the PENDING request is inserted.  A
   lost compare releases whatever was already held (keyed on the token,
   so another proposal's hold is never touched) and reports the conflict.
*  **resolve** writes requester slot, target slot, then request status, in
   that fixed order, each keyed on the hold.  A lost compare before any
   write is an ordinary conflict; anything after the first write is a
   ``PartialFailure`` for the reconciler, never a silent success.

Request state machine::

    PENDING --accept--> ACCEPTED   (terminal)
    PENDING --reject--> REJECTED   (terminal)
"""

from __future__ import annotations

import logging
from typing import Iterable

from swapmarket.core.clock import IClock, WallClock
from swapmarket.core.enums import Decision, SlotStatus, SwapStatus, TransitionActor
from swapmarket.core.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransition,
    NotAuthorized,
    NotFoundError,
    NotPending,
    PartialFailure,
    SlotAlreadyPending,
    SlotNotFound,
    StoreUnavailable,
    SwapConflict,
    SwapMarketError,
    ValidationError,
)
from swapmarket.core.ids import new_id
from swapmarket.core.models import EventSlot, SwapRequest, SwapResolution
from swapmarket.observability.metrics import (
    record_partial_failure,
    record_proposal,
    record_resolution,
)
from swapmarket.storage.repos import SlotRepository, SwapRequestRepository

from .slot_status import SlotStatusController

logger = logging.getLogger(__name__)

# Step names reported in PartialFailure.applied / failed_step
STEP_HOLD_REQUESTER = "hold_requester_slot"
STEP_HOLD_TARGET = "hold_target_slot"
STEP_INSERT_REQUEST = "insert_request"
STEP_REQUESTER_SLOT = "requester_slot"
STEP_TARGET_SLOT = "target_slot"
STEP_REQUEST_STATUS = "request_status"

_DECISION_STATUS: dict[Decision, SwapStatus] = {
    Decision.ACCEPT: SwapStatus.ACCEPTED,
    Decision.REJECT: SwapStatus.REJECTED,
}


def _outcome(exc: SwapMarketError) -> str:
    """Metric label for a failed operation."""
    if isinstance(exc, PartialFailure):
        return "partial"
    if isinstance(exc, StoreUnavailable):
        return "unavailable"
    if isinstance(exc, ConflictError):
        return "conflict"
    if isinstance(exc, AuthorizationError):
        return "unauthorized"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, ValidationError):
        return "invalid"
    return "error"


def held_by(slot: EventSlot, request_id: str) -> bool:
    """True if *slot* is SWAP_PENDING under *request_id*."""
    return slot.is_pending and slot.pending_request_id == request_id


class SwapLifecycleEngine:
    """Orchestrates swap proposals and their resolution.

    Parameters
    ----------
    slots:
        Slot repository.
    requests:
        Swap request repository.
    controller:
        Slot status controller; built over *slots* when omitted.
    clock:
        Source of ``created_at`` / ``resolved_at``.
    """

    def __init__(
        self,
        slots: SlotRepository,
        requests: SwapRequestRepository,
        controller: SlotStatusController | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._slots = slots
        self._requests = requests
        self._clock = clock or WallClock()
        self._controller = controller or SlotStatusController(
            slots, self._clock, requests,
        )

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    async def propose(
        self,
        requester_slot_id: str,
        target_slot_id: str,
        requester_id: str,
    ) -> SwapRequest:
        """Offer *requester_slot_id* in exchange for *target_slot_id*.

        Returns the new PENDING request.  On any error no hold and no
        request remain, except for ``PartialFailure``.
        """
        try:
            request = await self._propose(requester_slot_id, target_slot_id, requester_id)
        except SwapMarketError as exc:
            record_proposal(_outcome(exc))
            raise
        record_proposal("created")
        return request

    async def _propose(
        self,
        requester_slot_id: str,
        target_slot_id: str,
        requester_id: str,
    ) -> SwapRequest:
        if requester_slot_id == target_slot_id:
            raise ValidationError("A slot cannot be swapped with itself")

        requester_slot = await self._slots.require(requester_slot_id)
        target_slot = await self._slots.require(target_slot_id)

        if requester_slot.owner_id != requester_id:
            raise NotAuthorized(
                f"User {requester_id} does not own slot {requester_slot_id}"
            )
        if target_slot.owner_id == requester_id:
            raise ValidationError("Cannot propose a swap between your own slots")
        _require_swappable(requester_slot)
        _require_swappable(target_slot)
        await self._require_settled(requester_slot)
        await self._require_settled(target_slot)

        request_id = new_id()
        held: list[EventSlot] = []
        for slot, step in (
            (requester_slot, STEP_HOLD_REQUESTER),
            (target_slot, STEP_HOLD_TARGET),
        ):
            try:
                updated = await self._controller.transition(
                    slot,
                    SlotStatus.SWAP_PENDING,
                    actor=TransitionActor.ENGINE,
                    pending_request_id=request_id,
                )
            except StoreUnavailable:
                # The in-flight hold may have landed; release it too.
                in_flight = slot.model_copy(
                    update={
                        "status": SlotStatus.SWAP_PENDING,
                        "pending_request_id": request_id,
                    }
                )
                await self._release([*held, in_flight], request_id, step)
                raise
            if updated is None:
                await self._release(held, request_id, step)
                raise await self._classify_lost_hold(slot.id)
            held.append(updated)

        request = SwapRequest(
            id=request_id,
            requester_slot_id=requester_slot.id,
            target_slot_id=target_slot.id,
            requester_id=requester_id,
            target_user_id=target_slot.owner_id,
            status=SwapStatus.PENDING,
            created_at=self._clock.now(),
        )
        try:
            await self._requests.add(request)
        except StoreUnavailable:
            existing = await self._probe_request(request_id)
            if existing is not None:
                logger.info("Request insert confirmed after timeout: id=%s", request_id)
                return existing
            await self._release(held, request_id, STEP_INSERT_REQUEST)
            raise
        except ConflictError:
            await self._release(held, request_id, STEP_INSERT_REQUEST)
            raise

        logger.info(
            "Swap proposed: request=%s requester=%s slot=%s target_user=%s slot=%s",
            request.id,
            requester_id,
            requester_slot.id,
            request.target_user_id,
            target_slot.id,
        )
        return request

    async def _require_settled(self, slot: EventSlot) -> None:
        """Refuse a slot whose last resolution stopped midway.

        Until such a request is reconciled, the slot's owner is the only
        evidence of which decision was taken; a new swap must not change it.
        """
        if slot.resolved_by_request_id is None:
            return
        last = await self._requests.get(slot.resolved_by_request_id)
        if last is not None and not last.is_terminal:
            raise SwapConflict(
                f"Slot {slot.id} awaits reconciliation of swap request {last.id}"
            )

    async def _release(
        self,
        held: Iterable[EventSlot],
        request_id: str,
        failed_step: str,
    ) -> None:
        """Return slots held under *request_id* to SWAPPABLE.

        Only slots still held by this request are touched.  If a release
        cannot be confirmed, the proposal is left half-applied and a
        ``PartialFailure`` is raised.
        """
        released: list[str] = []
        for slot in held:
            try:
                result = await self._controller.transition(
                    slot, SlotStatus.SWAPPABLE, actor=TransitionActor.ENGINE,
                )
            except StoreUnavailable as exc:
                record_partial_failure("propose")
                logger.error(
                    "Could not release slot %s held by %s: %s", slot.id, request_id, exc,
                )
                raise PartialFailure(
                    request_id,
                    released,
                    failed_step,
                    f"release of slot {slot.id} failed: {exc}",
                ) from exc
            if result is not None:
                released.append(f"release:{slot.id}")
                logger.debug("Released slot %s held by %s", slot.id, request_id)

    async def _classify_lost_hold(self, slot_id: str) -> SwapMarketError:
        """Explain why a SWAPPABLE -> SWAP_PENDING compare failed."""
        fresh = await self._slots.get(slot_id)
        if fresh is None:
            return SlotNotFound(slot_id)
        if fresh.is_pending:
            return SlotAlreadyPending(slot_id)
        if fresh.status != SlotStatus.SWAPPABLE:
            return InvalidTransition(f"Slot {slot_id} is no longer swappable")
        return SwapConflict(f"Slot {slot_id} changed owner during the proposal")

    async def _probe_request(self, request_id: str) -> SwapRequest | None:
        """Read back a request whose insert timed out."""
        try:
            return await self._requests.get(request_id)
        except StoreUnavailable as exc:
            record_partial_failure("propose")
            raise PartialFailure(
                request_id,
                [STEP_HOLD_REQUESTER, STEP_HOLD_TARGET],
                STEP_INSERT_REQUEST,
                f"insert outcome unknown: {exc}",
            ) from exc

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        request_id: str,
        decision: Decision | str,
        acting_user_id: str,
    ) -> SwapResolution:
        """Accept or reject a PENDING request as its target user.

        Not idempotent: resolving a terminal request raises ``NotPending``.
        """
        try:
            decision = Decision(decision)
        except ValueError as exc:
            record_resolution("unknown", "invalid")
            raise ValidationError(f"Unknown swap decision: {decision!r}") from exc
        try:
            resolution = await self._resolve(request_id, decision, acting_user_id)
        except SwapMarketError as exc:
            record_resolution(decision.value, _outcome(exc))
            raise
        record_resolution(decision.value, "resolved")
        return resolution

    async def _resolve(
        self,
        request_id: str,
        decision: Decision,
        acting_user_id: str,
    ) -> SwapResolution:
        request = await self._requests.require(request_id)
        if request.is_terminal:
            raise NotPending(request_id, request.status.value)
        if acting_user_id != request.target_user_id:
            raise NotAuthorized(
                f"Only the recipient may resolve swap request {request_id}"
            )

        requester_slot = await self._load_held(request.requester_slot_id, request)
        target_slot = await self._load_held(request.target_slot_id, request)

        if decision == Decision.ACCEPT:
            plan = (
                (requester_slot, SlotStatus.BUSY, request.target_user_id, STEP_REQUESTER_SLOT),
                (target_slot, SlotStatus.BUSY, request.requester_id, STEP_TARGET_SLOT),
            )
        else:
            plan = (
                (requester_slot, SlotStatus.SWAPPABLE, None, STEP_REQUESTER_SLOT),
                (target_slot, SlotStatus.SWAPPABLE, None, STEP_TARGET_SLOT),
            )
        final_status = _DECISION_STATUS[decision]

        applied: list[str] = []
        updated: list[EventSlot] = []
        for slot, status, new_owner_id, step in plan:
            try:
                result = await self._controller.transition(
                    slot,
                    status,
                    actor=TransitionActor.ENGINE,
                    new_owner_id=new_owner_id,
                    resolving_request_id=request.id,
                )
            except StoreUnavailable as exc:
                raise self._partial(request, applied, step, f"store unavailable: {exc}") from exc
            if result is None:
                if not applied:
                    raise await self._classify_lost_resolution(request_id)
                raise self._partial(request, applied, step, "conditional write matched no rows")
            applied.append(step)
            updated.append(result)

        resolved_at = self._clock.now()
        try:
            marked = await self._requests.mark_resolved(request_id, final_status, resolved_at)
        except StoreUnavailable as exc:
            raise self._partial(
                request, applied, STEP_REQUEST_STATUS, f"store unavailable: {exc}"
            ) from exc
        if not marked:
            raise self._partial(
                request, applied, STEP_REQUEST_STATUS, "request was no longer PENDING"
            )

        resolved = request.model_copy(
            update={"status": final_status, "resolved_at": resolved_at}
        )
        logger.info(
            "Swap %s: request=%s requester_slot=%s target_slot=%s",
            final_status.value.lower(),
            request_id,
            request.requester_slot_id,
            request.target_slot_id,
        )
        return SwapResolution(
            request=resolved,
            requester_slot=updated[0],
            target_slot=updated[1],
        )

    async def _load_held(self, slot_id: str, request: SwapRequest) -> EventSlot:
        """Read a slot that must be held by *request* before resolution."""
        slot = await self._slots.get(slot_id)
        if slot is not None and held_by(slot, request.id):
            return slot
        fresh = await self._requests.get(request.id)
        if fresh is not None and fresh.is_terminal:
            raise NotPending(request.id, fresh.status.value)
        raise SwapConflict(
            f"Slot {slot_id} is not held by swap request {request.id}; "
            "a resolution may be in progress or need reconciliation"
        )

    async def _classify_lost_resolution(self, request_id: str) -> SwapMarketError:
        """First resolution write lost its compare: nothing was written."""
        fresh = await self._requests.get(request_id)
        if fresh is not None and fresh.is_terminal:
            return NotPending(request_id, fresh.status.value)
        return SwapConflict(
            f"Swap request {request_id} is being resolved concurrently"
        )

    def _partial(
        self,
        request: SwapRequest,
        applied: list[str],
        failed_step: str,
        reason: str,
    ) -> PartialFailure:
        record_partial_failure("resolve")
        logger.error(
            "Swap resolution stopped midway: request=%s applied=%s failed_step=%s (%s)",
            request.id,
            applied,
            failed_step,
            reason,
        )
        return PartialFailure(request.id, applied, failed_step, reason)


def _require_swappable(slot: EventSlot) -> None:
    if slot.status == SlotStatus.SWAP_PENDING:
        raise SlotAlreadyPending(slot.id)
    if slot.status != SlotStatus.SWAPPABLE:
        raise InvalidTransition(f"Slot {slot.id} is not swappable ({slot.status.value})")
