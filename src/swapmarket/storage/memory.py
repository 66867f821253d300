"""In-memory record store for testing and local development.

Each operation yields to the event loop once before touching state, so
concurrent coroutines interleave between operations the way they would
against a remote store.  The compare and the write inside a single
operation never interleave, which is exactly the per-record atomicity
the remote backends provide.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Mapping

from swapmarket.core.errors import ConflictError
from swapmarket.core.interfaces import ALL_TABLES, Record, RecordFilter

logger = logging.getLogger(__name__)

_MISSING = object()


def _fields_match(record: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    return all(record.get(k, _MISSING) == v for k, v in expected.items())


class InMemoryRecordStore:
    """Dict-of-dicts store.  Records are deep-copied in and out."""

    def __init__(self, tables: tuple[str, ...] = ALL_TABLES) -> None:
        self._tables: dict[str, dict[str, Record]] = {t: {} for t in tables}

    def _table(self, table: str) -> dict[str, Record]:
        try:
            return self._tables[table]
        except KeyError:
            raise KeyError(f"Unknown table: {table}") from None

    async def get(self, table: str, record_id: str) -> Record | None:
        await asyncio.sleep(0)
        record = self._table(table).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Record:
        await asyncio.sleep(0)
        rows = self._table(table)
        record_id = fields["id"]
        if record_id in rows:
            raise ConflictError(f"Duplicate id in {table}: {record_id}")
        rows[record_id] = copy.deepcopy(dict(fields))
        return copy.deepcopy(rows[record_id])

    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> int:
        await asyncio.sleep(0)
        record = self._table(table).get(record_id)
        if record is None or not _fields_match(record, expected):
            return 0
        record.update(copy.deepcopy(dict(changes)))
        return 1

    async def conditional_delete(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
    ) -> int:
        await asyncio.sleep(0)
        rows = self._table(table)
        record = rows.get(record_id)
        if record is None or not _fields_match(record, expected):
            return 0
        del rows[record_id]
        return 1

    async def list_by_filter(
        self,
        table: str,
        where: RecordFilter,
        order_by: str,
        *,
        descending: bool = False,
    ) -> list[Record]:
        await asyncio.sleep(0)
        matched = [
            copy.deepcopy(r) for r in self._table(table).values() if where.matches(r)
        ]
        matched.sort(key=lambda r: r[order_by], reverse=descending)
        return matched

    async def close(self) -> None:
        return None

    # -- test helpers ----------------------------------------------------------

    def count(self, table: str) -> int:
        """Number of records in *table*."""
        return len(self._table(table))

    def clear(self) -> None:
        """Drop all records.  For testing only."""
        for rows in self._tables.values():
            rows.clear()
