"""Initial schema: profiles, event_slots, swap_requests.

Revision ID: 001_swap_schema
Revises: None
Create Date: 2026-10-18 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_swap_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # User display data
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), server_default=""),
        sa.Column("email", sa.String(320), server_default=""),
    )

    # Calendar slots
    op.create_table(
        "event_slots",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="BUSY"),
        sa.Column("pending_request_id", sa.String(64), nullable=True),
        sa.Column("resolved_by_request_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("end_time > start_time", name="ck_event_slots_time_range"),
        sa.CheckConstraint(
            "status IN ('BUSY', 'SWAPPABLE', 'SWAP_PENDING')",
            name="ck_event_slots_status",
        ),
    )
    op.create_index("ix_event_slots_owner_id", "event_slots", ["owner_id"])
    op.create_index("ix_event_slots_status_start", "event_slots", ["status", "start_time"])

    # Swap proposals (append-only history)
    op.create_table(
        "swap_requests",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("requester_slot_id", sa.String(64), nullable=False),
        sa.Column("target_slot_id", sa.String(64), nullable=False),
        sa.Column("requester_id", sa.String(64), nullable=False),
        sa.Column("target_user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "requester_slot_id <> target_slot_id", name="ck_swap_requests_distinct_slots"
        ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'ACCEPTED', 'REJECTED')",
            name="ck_swap_requests_status",
        ),
    )
    op.create_index(
        "ix_swap_requests_requester_id", "swap_requests", ["requester_id", "created_at"]
    )
    op.create_index(
        "ix_swap_requests_target_user_id", "swap_requests", ["target_user_id", "created_at"]
    )
    op.create_index("ix_swap_requests_status", "swap_requests", ["status"])


def downgrade() -> None:
    op.drop_table("swap_requests")
    op.drop_table("event_slots")
    op.drop_table("profiles")
