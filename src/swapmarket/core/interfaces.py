"""Protocol interfaces for the swap marketplace.

The record store is the only shared mutable resource.  It is modelled as a
narrow capability: single-record reads and writes, where every write is a
compare-and-swap on named fields.  No multi-record transaction is assumed;
the swap engine synthesizes the atomicity it needs on top of this.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable

Record = dict[str, Any]


# ---------------------------------------------------------------------------
# Table names
# ---------------------------------------------------------------------------

SLOTS_TABLE = "event_slots"
REQUESTS_TABLE = "swap_requests"
PROFILES_TABLE = "profiles"

ALL_TABLES = (SLOTS_TABLE, REQUESTS_TABLE, PROFILES_TABLE)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordFilter:
    """Conjunction of field equality / inequality tests.

    Every backend must translate this exactly; ``matches`` is the
    reference semantics used by the in-memory and Redis stores.
    """

    equals: Mapping[str, Any] = field(default_factory=dict)
    not_equals: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, record: Mapping[str, Any]) -> bool:
        for key, value in self.equals.items():
            if record.get(key) != value:
                return False
        for key, value in self.not_equals.items():
            if record.get(key) == value:
                return False
        return True


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------

@runtime_checkable
class IRecordStore(Protocol):
    """Per-record conditional store.

    All methods raise ``StoreUnavailable`` on timeout or connection loss;
    the outcome of a write that raised is unknown to the caller.
    """

    async def get(self, table: str, record_id: str) -> Record | None:
        """Return the record, or ``None`` when it does not exist."""
        ...

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Record:
        """Create a record.  ``fields["id"]`` must be new (``ConflictError``)."""
        ...

    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> int:
        """Apply *changes* only if every *expected* field matches.

        Returns rows affected: 1 on success, 0 if the record is missing or
        any expected field differs.
        """
        ...

    async def conditional_delete(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
    ) -> int:
        """Delete only if every *expected* field matches.  Returns 0 or 1."""
        ...

    async def list_by_filter(
        self,
        table: str,
        where: RecordFilter,
        order_by: str,
        *,
        descending: bool = False,
    ) -> list[Record]:
        """Return matching records sorted by *order_by*.  Re-queried per call."""
        ...

    async def close(self) -> None: ...
