"""SQLAlchemy ORM models for the swap marketplace database.

Ids are opaque strings (UUID text) so the same schema runs on PostgreSQL
and SQLite.  Status columns hold the enum wire values.

Relationships:
    SwapRequestRecord *--1 EventSlotRecord (requester_slot_id, target_slot_id)
    EventSlotRecord.pending_request_id names the single PENDING request
    holding the slot.  EventSlotRecord.resolved_by_request_id names the
    last request whose accept or reject wrote the slot.
    No foreign keys are declared: slots may be deleted after a request is
    resolved, and requests are kept as history.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# ProfileRecord
# ---------------------------------------------------------------------------

class ProfileRecord(Base):
    """User display data.  ``id`` is the external user id."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(320), default="")

    def __repr__(self) -> str:
        return f"<ProfileRecord id={self.id} name={self.name}>"


# ---------------------------------------------------------------------------
# EventSlotRecord
# ---------------------------------------------------------------------------

class EventSlotRecord(Base):
    """Calendar slot.  Every status change is a conditional UPDATE."""

    __tablename__ = "event_slots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="BUSY")
    pending_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_by_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        Index("ix_event_slots_owner_id", "owner_id"),
        Index("ix_event_slots_status_start", "status", "start_time"),
        CheckConstraint("end_time > start_time", name="ck_event_slots_time_range"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventSlotRecord id={self.id} owner={self.owner_id} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# SwapRequestRecord
# ---------------------------------------------------------------------------

class SwapRequestRecord(Base):
    """Swap proposal.  Append-only; only status/resolved_at change."""

    __tablename__ = "swap_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    requester_slot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_slot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    __table_args__ = (
        Index("ix_swap_requests_requester_id", "requester_id", "created_at"),
        Index("ix_swap_requests_target_user_id", "target_user_id", "created_at"),
        Index("ix_swap_requests_status", "status"),
        CheckConstraint(
            "requester_slot_id <> target_slot_id",
            name="ck_swap_requests_distinct_slots",
        ),
    )

    def __repr__(self) -> str:
        return f"<SwapRequestRecord id={self.id} status={self.status}>"
