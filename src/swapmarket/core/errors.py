"""Custom exception hierarchy for the swap marketplace."""

from __future__ import annotations

from typing import Sequence


class SwapMarketError(Exception):
    """Base exception for all swap marketplace errors."""


# --- Configuration ---
class ConfigError(SwapMarketError):
    """Invalid or missing configuration."""


# --- Validation (rejected before any write) ---
class ValidationError(SwapMarketError):
    """Bad input: time range, missing fields, self-swap."""


# --- Lookup ---
class NotFoundError(SwapMarketError):
    """Referenced record does not exist."""


class SlotNotFound(NotFoundError):
    """No event slot with the given id."""

    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"Slot not found: {slot_id}")


class RequestNotFound(NotFoundError):
    """No swap request with the given id."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Swap request not found: {request_id}")


# --- Conflict (surfaced, never auto-retried) ---
class ConflictError(SwapMarketError):
    """Observed state no longer matches what the operation expected."""


class SlotAlreadyPending(ConflictError):
    """Slot is already held by another pending swap request."""

    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"Slot {slot_id} is already pending in another swap")


class NotPending(ConflictError):
    """Swap request has already been resolved."""

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Swap request {request_id} is not pending (status={status})"
        )


class InvalidTransition(ConflictError):
    """Slot status edge is not permitted."""


class SlotLocked(ConflictError):
    """Slot cannot be modified or deleted while a swap is pending."""

    def __init__(self, slot_id: str):
        self.slot_id = slot_id
        super().__init__(f"Slot {slot_id} is locked by a pending swap")


class SwapConflict(ConflictError):
    """Concurrent writer changed a record mid-operation."""


# --- Authorization (surfaced, never retried) ---
class AuthorizationError(SwapMarketError):
    """Acting user may not perform the operation."""


class NotAuthorized(AuthorizationError):
    """Acting user is not the party allowed to act."""


# --- Store ---
class StoreError(SwapMarketError):
    """Backing store failure."""


class StoreUnavailable(StoreError):
    """Store timed out or refused the connection. Outcome unknown."""


class PartialFailure(SwapMarketError):
    """A multi-record write stopped midway; reconciliation is required.

    Never retry the original operation blindly: run the reconciler for
    ``request_id`` instead.
    """

    def __init__(
        self,
        request_id: str,
        applied: Sequence[str],
        failed_step: str,
        reason: str,
    ):
        self.request_id = request_id
        self.applied = tuple(applied)
        self.failed_step = failed_step
        self.reason = reason
        super().__init__(
            f"Partial failure on swap request {request_id}: "
            f"applied={list(self.applied)} failed_step={failed_step} "
            f"({reason}); reconciliation required"
        )
