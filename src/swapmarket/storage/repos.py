"""Repository pattern over the record store.

Each repository encapsulates record access for a single aggregate and
converts between core domain models (:mod:`swapmarket.core.models`) and
plain store records.  Writes that change existing records are always
conditional; the repositories expose the compare-and-swap result as a
``bool`` and leave conflict classification to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping

from swapmarket.core.enums import RequestDirection, SlotStatus, SwapStatus
from swapmarket.core.errors import ConflictError, RequestNotFound, SlotNotFound
from swapmarket.core.interfaces import (
    PROFILES_TABLE,
    REQUESTS_TABLE,
    SLOTS_TABLE,
    IRecordStore,
    Record,
    RecordFilter,
)
from swapmarket.core.models import EventSlot, Profile, SwapRequest
from swapmarket.observability.metrics import record_cas_conflict

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _plain(value: Any) -> Any:
    """Strip enum wrappers so every backend receives primitive values."""
    if isinstance(value, (SlotStatus, SwapStatus)):
        return value.value
    return value


def _plain_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _plain(v) for k, v in fields.items()}


def _slot_to_record(slot: EventSlot) -> Record:
    """Convert a core :class:`EventSlot` to a store record."""
    return {
        "id": slot.id,
        "owner_id": slot.owner_id,
        "title": slot.title,
        "start_time": slot.start_time,
        "end_time": slot.end_time,
        "status": slot.status.value,
        "pending_request_id": slot.pending_request_id,
        "resolved_by_request_id": slot.resolved_by_request_id,
        "created_at": slot.created_at,
        "updated_at": slot.updated_at,
    }


def _record_to_slot(record: Mapping[str, Any]) -> EventSlot:
    """Convert a store record back to a core :class:`EventSlot`."""
    return EventSlot.model_validate(dict(record))


def _request_to_record(request: SwapRequest) -> Record:
    """Convert a core :class:`SwapRequest` to a store record."""
    return {
        "id": request.id,
        "requester_slot_id": request.requester_slot_id,
        "target_slot_id": request.target_slot_id,
        "requester_id": request.requester_id,
        "target_user_id": request.target_user_id,
        "status": request.status.value,
        "created_at": request.created_at,
        "resolved_at": request.resolved_at,
    }


def _record_to_request(record: Mapping[str, Any]) -> SwapRequest:
    """Convert a store record back to a core :class:`SwapRequest`."""
    return SwapRequest.model_validate(dict(record))


def slot_hold(slot: EventSlot) -> dict[str, Any]:
    """Fields a CAS on *slot* must observe unchanged."""
    return {
        "status": slot.status.value,
        "owner_id": slot.owner_id,
        "pending_request_id": slot.pending_request_id,
        "resolved_by_request_id": slot.resolved_by_request_id,
    }


# ---------------------------------------------------------------------------
# SlotRepository
# ---------------------------------------------------------------------------

class SlotRepository:
    """Event slot access over an :class:`IRecordStore`."""

    def __init__(self, store: IRecordStore) -> None:
        self._store = store

    async def get(self, slot_id: str) -> EventSlot | None:
        record = await self._store.get(SLOTS_TABLE, slot_id)
        return _record_to_slot(record) if record is not None else None

    async def require(self, slot_id: str) -> EventSlot:
        slot = await self.get(slot_id)
        if slot is None:
            raise SlotNotFound(slot_id)
        return slot

    async def get_many(self, slot_ids: Iterable[str]) -> dict[str, EventSlot]:
        found: dict[str, EventSlot] = {}
        for slot_id in dict.fromkeys(slot_ids):
            slot = await self.get(slot_id)
            if slot is not None:
                found[slot_id] = slot
        return found

    async def add(self, slot: EventSlot) -> EventSlot:
        await self._store.insert(SLOTS_TABLE, _slot_to_record(slot))
        logger.debug("Slot created: id=%s owner=%s", slot.id, slot.owner_id)
        return slot

    async def compare_and_set(
        self,
        slot_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> bool:
        """Conditional update; ``True`` iff exactly one row changed."""
        rows = await self._store.conditional_update(
            SLOTS_TABLE, slot_id, _plain_fields(expected), _plain_fields(changes),
        )
        if rows == 0:
            record_cas_conflict(SLOTS_TABLE)
        return rows == 1

    async def delete_if(self, slot_id: str, expected: Mapping[str, Any]) -> bool:
        rows = await self._store.conditional_delete(
            SLOTS_TABLE, slot_id, _plain_fields(expected),
        )
        if rows == 0:
            record_cas_conflict(SLOTS_TABLE)
        return rows == 1

    async def list_by_owner(self, owner_id: str) -> list[EventSlot]:
        records = await self._store.list_by_filter(
            SLOTS_TABLE, RecordFilter(equals={"owner_id": owner_id}), "start_time",
        )
        return [_record_to_slot(r) for r in records]

    async def list_by_status(
        self,
        status: SlotStatus,
        *,
        owner_id: str | None = None,
        excluding_owner_id: str | None = None,
    ) -> list[EventSlot]:
        equals: dict[str, Any] = {"status": status.value}
        not_equals: dict[str, Any] = {}
        if owner_id is not None:
            equals["owner_id"] = owner_id
        if excluding_owner_id is not None:
            not_equals["owner_id"] = excluding_owner_id
        records = await self._store.list_by_filter(
            SLOTS_TABLE,
            RecordFilter(equals=equals, not_equals=not_equals),
            "start_time",
        )
        return [_record_to_slot(r) for r in records]


# ---------------------------------------------------------------------------
# SwapRequestRepository
# ---------------------------------------------------------------------------

class SwapRequestRepository:
    """Append-only swap request access.  Only status can change."""

    def __init__(self, store: IRecordStore) -> None:
        self._store = store

    async def get(self, request_id: str) -> SwapRequest | None:
        record = await self._store.get(REQUESTS_TABLE, request_id)
        return _record_to_request(record) if record is not None else None

    async def require(self, request_id: str) -> SwapRequest:
        request = await self.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    async def add(self, request: SwapRequest) -> SwapRequest:
        await self._store.insert(REQUESTS_TABLE, _request_to_record(request))
        logger.debug(
            "Swap request created: id=%s %s -> %s",
            request.id,
            request.requester_slot_id,
            request.target_slot_id,
        )
        return request

    async def mark_resolved(
        self,
        request_id: str,
        status: SwapStatus,
        resolved_at: datetime,
    ) -> bool:
        """PENDING -> *status*.  ``False`` if the request was not PENDING."""
        rows = await self._store.conditional_update(
            REQUESTS_TABLE,
            request_id,
            {"status": SwapStatus.PENDING.value},
            {"status": status.value, "resolved_at": resolved_at},
        )
        if rows == 0:
            record_cas_conflict(REQUESTS_TABLE)
        return rows == 1

    async def list_for_user(
        self,
        user_id: str,
        direction: RequestDirection,
    ) -> list[SwapRequest]:
        """Requests involving *user_id*, newest first."""
        fields: list[str] = []
        if direction in (RequestDirection.INCOMING, RequestDirection.ALL):
            fields.append("target_user_id")
        if direction in (RequestDirection.OUTGOING, RequestDirection.ALL):
            fields.append("requester_id")

        merged: dict[str, Record] = {}
        for field_name in fields:
            records = await self._store.list_by_filter(
                REQUESTS_TABLE,
                RecordFilter(equals={field_name: user_id}),
                "created_at",
                descending=True,
            )
            for record in records:
                merged.setdefault(record["id"], record)

        requests = [_record_to_request(r) for r in merged.values()]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    async def list_pending(self) -> list[SwapRequest]:
        records = await self._store.list_by_filter(
            REQUESTS_TABLE,
            RecordFilter(equals={"status": SwapStatus.PENDING.value}),
            "created_at",
        )
        return [_record_to_request(r) for r in records]


# ---------------------------------------------------------------------------
# ProfileRepository
# ---------------------------------------------------------------------------

class ProfileRepository:
    """User display data for joined views."""

    def __init__(self, store: IRecordStore) -> None:
        self._store = store

    async def get(self, user_id: str) -> Profile | None:
        record = await self._store.get(PROFILES_TABLE, user_id)
        return Profile.model_validate(record) if record is not None else None

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, Profile]:
        found: dict[str, Profile] = {}
        for user_id in dict.fromkeys(user_ids):
            profile = await self.get(user_id)
            if profile is not None:
                found[user_id] = profile
        return found

    async def upsert(self, profile: Profile) -> Profile:
        fields = profile.model_dump()
        try:
            await self._store.insert(PROFILES_TABLE, fields)
        except ConflictError:
            await self._store.conditional_update(
                PROFILES_TABLE,
                profile.id,
                {},
                {"name": profile.name, "email": profile.email},
            )
        return profile
