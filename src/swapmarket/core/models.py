"""Core domain models used across the swap marketplace.

These are the canonical "truth models" for the system.  Stores hand back
plain record dicts; repositories convert them to these types at the edge.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from .enums import TERMINAL_SWAP_STATUSES, SlotStatus, SwapStatus
from .ids import as_utc


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class Profile(BaseModel):
    """Display data for a user, used by the joined request views."""

    id: str
    name: str = ""
    email: str = ""


# ---------------------------------------------------------------------------
# Event slot
# ---------------------------------------------------------------------------

class EventSlot(BaseModel):
    """A calendar interval owned by a user; the unit of exchange."""

    id: str
    owner_id: str
    title: str
    start_time: datetime
    end_time: datetime
    status: SlotStatus = SlotStatus.BUSY
    # Id of the single pending request holding this slot (SWAP_PENDING only)
    pending_request_id: str | None = None
    # Id of the last request whose resolution wrote this slot
    resolved_by_request_id: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def _check_range(self) -> "EventSlot":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def is_pending(self) -> bool:
        return self.status == SlotStatus.SWAP_PENDING


# ---------------------------------------------------------------------------
# Swap request
# ---------------------------------------------------------------------------

class SwapRequest(BaseModel):
    """A proposal to exchange two slots between their owners."""

    id: str
    requester_slot_id: str
    target_slot_id: str
    requester_id: str
    target_user_id: str
    status: SwapStatus = SwapStatus.PENDING
    created_at: datetime
    resolved_at: datetime | None = None

    @field_validator("created_at", "resolved_at")
    @classmethod
    def _utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v) if v is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SWAP_STATUSES

    def slot_ids(self) -> tuple[str, str]:
        return (self.requester_slot_id, self.target_slot_id)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

class SwapRequestView(BaseModel):
    """Swap request joined with both parties' profiles and slots.

    Joins that cannot be resolved (profile never registered, slot deleted
    after a rejection) are ``None``; the slot ids are always kept.
    """

    id: str
    status: SwapStatus
    requester_slot_id: str
    target_slot_id: str
    created_at: datetime
    resolved_at: datetime | None = None
    requester: Profile | None = None
    target_user: Profile | None = None
    requester_slot: EventSlot | None = None
    target_slot: EventSlot | None = None


class SwapResolution(BaseModel):
    """Fully resolved state returned by accept/reject.

    Callers render from this directly; no re-fetch is needed.
    """

    request: SwapRequest
    requester_slot: EventSlot
    target_slot: EventSlot


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation run."""

    checked_requests: int = 0
    checked_slots: int = 0
    completed_accepts: list[str] = Field(default_factory=list)
    completed_rejects: list[str] = Field(default_factory=list)
    released_slots: list[str] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)

    @property
    def repaired(self) -> int:
        return (
            len(self.completed_accepts)
            + len(self.completed_rejects)
            + len(self.released_slots)
        )
