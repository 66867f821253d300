"""SQL implementation of the record store capability.

Every write is a single statement in its own transaction:

*  ``conditional_update`` -> ``UPDATE t SET ... WHERE id = :id AND <expected>``
   and the driver's rowcount is the compare-and-swap result.
*  ``conditional_delete`` -> ``DELETE FROM t WHERE id = :id AND <expected>``.

No statement spans two records; the swap engine does not rely on
multi-row transactions even where the database offers them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from sqlalchemy import ColumnElement, Table, and_, delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from swapmarket.core.errors import ConflictError, StoreUnavailable
from swapmarket.core.interfaces import Record, RecordFilter
from swapmarket.observability.metrics import STORE_LATENCY

from .connection import create_all, create_engine, create_session_factory, session_scope
from .models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _column_equals(table: Table, key: str, value: Any) -> ColumnElement[bool]:
    column = table.c[key]
    if value is None:
        return column.is_(None)
    return column == value


def _column_differs(table: Table, key: str, value: Any) -> ColumnElement[bool]:
    column = table.c[key]
    if value is None:
        return column.is_not(None)
    # NULL != value is unknown in SQL; match the in-memory semantics
    return or_(column != value, column.is_(None))


def _conditions(table: Table, record_id: str, expected: Mapping[str, Any]) -> ColumnElement[bool]:
    clauses = [table.c.id == record_id]
    clauses.extend(_column_equals(table, k, v) for k, v in expected.items())
    return and_(*clauses)


class SqlRecordStore:
    """Record store over an async SQLAlchemy engine.

    Args:
        engine: Async engine; the store disposes it on :meth:`close`.
        timeout_seconds: Upper bound for each operation including commit.
    """

    def __init__(self, engine: AsyncEngine, *, timeout_seconds: float = 5.0) -> None:
        self._engine = engine
        self._factory = create_session_factory(engine)
        self._timeout = timeout_seconds

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        timeout_seconds: float = 5.0,
        create_tables: bool = False,
    ) -> "SqlRecordStore":
        """Build an engine for *url* and optionally create the schema."""
        engine = create_engine(
            url, pool_size=pool_size, max_overflow=max_overflow, echo=echo,
        )
        if create_tables:
            await create_all(engine)
        return cls(engine, timeout_seconds=timeout_seconds)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def _table(self, name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError:
            raise KeyError(f"Unknown table: {name}") from None

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        async def _scoped() -> T:
            async with session_scope(self._factory) as session:
                return await work(session)

        started = time.perf_counter()
        try:
            return await asyncio.wait_for(_scoped(), self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"SQL {operation} timed out after {self._timeout}s"
            ) from exc
        except IntegrityError as exc:
            raise ConflictError(f"SQL {operation} violated a constraint: {exc.orig}") from exc
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as exc:
            raise StoreUnavailable(f"SQL {operation} failed: {exc}") from exc
        finally:
            STORE_LATENCY.labels(backend="sql", operation=operation).observe(
                time.perf_counter() - started
            )

    # -- reads ---------------------------------------------------------------

    async def get(self, table: str, record_id: str) -> Record | None:
        t = self._table(table)

        async def _work(session: AsyncSession) -> Record | None:
            result = await session.execute(select(t).where(t.c.id == record_id))
            row = result.first()
            return dict(row._mapping) if row is not None else None

        return await self._run("get", _work)

    async def list_by_filter(
        self,
        table: str,
        where: RecordFilter,
        order_by: str,
        *,
        descending: bool = False,
    ) -> list[Record]:
        t = self._table(table)
        clauses = [_column_equals(t, k, v) for k, v in where.equals.items()]
        clauses.extend(_column_differs(t, k, v) for k, v in where.not_equals.items())
        order_col = t.c[order_by]
        stmt = select(t)
        if clauses:
            stmt = stmt.where(and_(*clauses))
        stmt = stmt.order_by(order_col.desc() if descending else order_col.asc())

        async def _work(session: AsyncSession) -> list[Record]:
            result = await session.execute(stmt)
            return [dict(row._mapping) for row in result]

        return await self._run("list", _work)

    # -- writes --------------------------------------------------------------

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Record:
        t = self._table(table)
        values = dict(fields)

        async def _work(session: AsyncSession) -> Record:
            await session.execute(insert(t).values(**values))
            return values

        return await self._run("insert", _work)

    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> int:
        t = self._table(table)
        stmt = (
            update(t)
            .where(_conditions(t, record_id, expected))
            .values(**dict(changes))
        )

        async def _work(session: AsyncSession) -> int:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

        rows = await self._run("update", _work)
        if rows == 0:
            logger.debug("Conditional update matched no rows: %s/%s", table, record_id)
        return rows

    async def conditional_delete(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
    ) -> int:
        t = self._table(table)
        stmt = delete(t).where(_conditions(t, record_id, expected))

        async def _work(session: AsyncSession) -> int:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

        return await self._run("delete", _work)

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("SQL engine disposed.")
