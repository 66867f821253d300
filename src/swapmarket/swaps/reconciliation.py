"""Reconciliation of swap state after partial failures.

The engine never retries a resolution that stopped midway; it raises
``PartialFailure`` instead.  This module repairs such states by rolling
them forward, deciding the intended outcome from what was already
written.  Every resolution write stamps the slot with
``resolved_by_request_id``, and only stamped slots count as evidence:

1.  A slot stamped by a PENDING request whose owner is the counterpart
    received the acceptance write, so the acceptance is completed.
2.  A slot stamped by the request whose owner is unchanged received the
    rejection write, so the rejection is completed.
3.  If both slots are still held, nothing was written and the request is
    left for the recipient to decide.
4.  A released slot without the stamp, or two slots that disagree, leave
    the request in ``unresolved``; nothing is written.

``sweep()`` additionally releases SWAP_PENDING slots whose hold names a
request that was never inserted.  Such slots are only released once they
are older than the grace period, so an in-flight proposal that has held
its slots but not yet inserted its request is not disturbed.

All repairs are conditional writes; running the reconciler twice, or
concurrently with itself, is safe.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from swapmarket.core.clock import IClock, WallClock
from swapmarket.core.enums import SlotStatus, SwapStatus, TransitionActor
from swapmarket.core.models import EventSlot, ReconciliationReport, SwapRequest
from swapmarket.observability.metrics import record_repair
from swapmarket.storage.repos import SlotRepository, SwapRequestRepository

from .engine import held_by
from .slot_status import SlotStatusController

logger = logging.getLogger(__name__)


class SwapReconciler:
    """Rolls partially applied swap operations forward.

    Parameters
    ----------
    slots, requests:
        Repositories over the shared store.
    controller:
        Slot status controller used for every slot write.
    clock:
        Time source for ``resolved_at`` and the orphan grace period.
    orphan_grace:
        Minimum age of an orphaned hold before ``sweep()`` releases it.
    """

    def __init__(
        self,
        slots: SlotRepository,
        requests: SwapRequestRepository,
        controller: SlotStatusController | None = None,
        clock: IClock | None = None,
        orphan_grace: timedelta = timedelta(seconds=60),
    ) -> None:
        self._slots = slots
        self._requests = requests
        self._clock = clock or WallClock()
        self._controller = controller or SlotStatusController(
            slots, self._clock, requests,
        )
        self._orphan_grace = orphan_grace

    # ------------------------------------------------------------------
    # Single request
    # ------------------------------------------------------------------

    async def reconcile_request(self, request_id: str) -> ReconciliationReport:
        """Repair one request and its two slots."""
        report = ReconciliationReport()
        request = await self._requests.require(request_id)
        await self._reconcile(request, report)
        self._emit(report)
        return report

    async def _reconcile(self, request: SwapRequest, report: ReconciliationReport) -> None:
        report.checked_requests += 1
        requester_slot = await self._slots.get(request.requester_slot_id)
        target_slot = await self._slots.get(request.target_slot_id)

        if request.is_terminal:
            outcome = request.status
        else:
            outcomes, released = _read_evidence(request, requester_slot, target_slot)
            if not released:
                return
            if len(outcomes) != 1:
                logger.warning(
                    "Cannot tell how request %s was resolved: slot evidence %s",
                    request.id,
                    sorted(o.value for o in outcomes),
                )
                report.unresolved.append(request.id)
                return
            outcome = outcomes.pop()

        await self._complete(request, outcome, requester_slot, target_slot, report)

    async def _complete(
        self,
        request: SwapRequest,
        outcome: SwapStatus,
        requester_slot: EventSlot | None,
        target_slot: EventSlot | None,
        report: ReconciliationReport,
    ) -> None:
        """Apply the missing writes of *outcome* for *request*."""
        repaired = False
        complete = True
        for slot, counterpart in (
            (requester_slot, request.target_user_id),
            (target_slot, request.requester_id),
        ):
            if slot is None or not held_by(slot, request.id):
                continue
            if outcome == SwapStatus.ACCEPTED:
                result = await self._controller.transition(
                    slot,
                    SlotStatus.BUSY,
                    actor=TransitionActor.ENGINE,
                    new_owner_id=counterpart,
                    resolving_request_id=request.id,
                )
            else:
                result = await self._controller.transition(
                    slot,
                    SlotStatus.SWAPPABLE,
                    actor=TransitionActor.ENGINE,
                    resolving_request_id=request.id,
                )
            if result is None:
                complete = False
            else:
                repaired = True

        if not complete:
            logger.warning("Reconciliation of request %s lost a slot compare", request.id)
            report.unresolved.append(request.id)
            return

        if not request.is_terminal:
            if await self._requests.mark_resolved(request.id, outcome, self._clock.now()):
                repaired = True
            else:
                fresh = await self._requests.get(request.id)
                if fresh is None or fresh.status != outcome:
                    report.unresolved.append(request.id)
                    return

        if repaired:
            if outcome == SwapStatus.ACCEPTED:
                report.completed_accepts.append(request.id)
            else:
                report.completed_rejects.append(request.id)
            logger.info(
                "Reconciled request %s -> %s", request.id, outcome.value,
            )

    # ------------------------------------------------------------------
    # Full sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> ReconciliationReport:
        """Check every held slot and every PENDING request."""
        report = ReconciliationReport()
        visited: set[str] = set()
        cutoff = self._clock.now() - self._orphan_grace

        for slot in await self._slots.list_by_status(SlotStatus.SWAP_PENDING):
            report.checked_slots += 1
            request = (
                await self._requests.get(slot.pending_request_id)
                if slot.pending_request_id
                else None
            )
            if request is None:
                if slot.updated_at > cutoff:
                    logger.debug("Skipping recent orphan hold on slot %s", slot.id)
                    continue
                released = await self._controller.transition(
                    slot, SlotStatus.SWAPPABLE, actor=TransitionActor.ENGINE,
                )
                if released is not None:
                    report.released_slots.append(slot.id)
                    logger.info(
                        "Released orphan hold on slot %s (request %s missing)",
                        slot.id,
                        slot.pending_request_id,
                    )
                continue
            if request.id not in visited:
                visited.add(request.id)
                await self._reconcile(request, report)

        for request in await self._requests.list_pending():
            if request.id not in visited:
                visited.add(request.id)
                await self._reconcile(request, report)

        self._emit(report)
        return report

    def _emit(self, report: ReconciliationReport) -> None:
        record_repair("accept", len(report.completed_accepts))
        record_repair("reject", len(report.completed_rejects))
        record_repair("orphan_hold", len(report.released_slots))
        if report.unresolved:
            logger.warning("Unresolved after reconciliation: %s", report.unresolved)


def _read_evidence(
    request: SwapRequest,
    requester_slot: EventSlot | None,
    target_slot: EventSlot | None,
) -> tuple[set[SwapStatus], bool]:
    """Outcomes written to the slots by *request*, and whether any hold is gone."""
    outcomes: set[SwapStatus] = set()
    released = False
    for slot, counterpart in (
        (requester_slot, request.target_user_id),
        (target_slot, request.requester_id),
    ):
        if slot is not None and held_by(slot, request.id):
            continue
        released = True
        if slot is None or slot.resolved_by_request_id != request.id:
            continue
        if slot.owner_id == counterpart:
            outcomes.add(SwapStatus.ACCEPTED)
        else:
            outcomes.add(SwapStatus.REJECTED)
    return outcomes, released
