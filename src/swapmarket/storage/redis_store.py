"""Redis-backed record store.

Each record is one JSON string under ``{prefix}{table}:{id}``; the ids of a
table are kept in the set ``{prefix}{table}:ids`` for listing.

Conditional writes use Redis optimistic locking: ``WATCH`` the record key,
read and compare in the client, then ``MULTI``/``EXEC`` the write.  If the
key changed between the read and ``EXEC`` the transaction is discarded and
the compare is re-evaluated against the fresh value, so a write succeeds
only against the state it actually compared.

Uses ``redis.asyncio`` for non-blocking I/O.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from swapmarket.core.errors import ConflictError, StoreUnavailable
from swapmarket.core.interfaces import ALL_TABLES, Record, RecordFilter
from swapmarket.observability.metrics import STORE_LATENCY

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()

# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


class _RecordEncoder(json.JSONEncoder):
    """JSON encoder that writes datetimes as ISO-8601 strings."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def _serialize(record: Mapping[str, Any]) -> str:
    return json.dumps(dict(record), cls=_RecordEncoder, sort_keys=True)


def _deserialize(raw: str | bytes | None) -> Record | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


def _normalise(value: Any) -> Any:
    """Bring a comparison value into its stored JSON form."""
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(value, str):
        return value.value
    return value


def _fields_match(record: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    return all(record.get(k, _MISSING) == _normalise(v) for k, v in expected.items())


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def _record_key(prefix: str, table: str, record_id: str) -> str:
    return f"{prefix}{table}:{record_id}"


def _ids_key(prefix: str, table: str) -> str:
    return f"{prefix}{table}:ids"


# ---------------------------------------------------------------------------
# RedisRecordStore
# ---------------------------------------------------------------------------


class RedisRecordStore:
    """Async Redis record store.

    Args:
        redis_url: Redis connection URL (e.g. ``redis://localhost:6379/0``).
        prefix: Key namespace prefix. Defaults to ``"swapmarket:"``.
        timeout_seconds: Upper bound for each operation.
        client: Pre-built client (tests pass a fakeredis instance).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "swapmarket:",
        timeout_seconds: float = 5.0,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._url = redis_url
        self._prefix = prefix
        self._timeout = timeout_seconds
        self._redis: aioredis.Redis | None = client

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Establish the Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(
            self._url,
            decode_responses=False,  # We handle decoding ourselves
            max_connections=20,
        )
        # Verify connectivity
        await self._run("ping", lambda: self.redis.ping())
        logger.info("Redis connected: %s", self._url.split("@")[-1])

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed.")

    @property
    def redis(self) -> aioredis.Redis:
        """Return the underlying Redis client, raising if not connected."""
        if self._redis is None:
            raise RuntimeError(
                "RedisRecordStore not connected. Call connect() first."
            )
        return self._redis

    async def _run(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(work(), self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"Redis {operation} timed out after {self._timeout}s"
            ) from exc
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise StoreUnavailable(f"Redis {operation} failed: {exc}") from exc
        finally:
            STORE_LATENCY.labels(backend="redis", operation=operation).observe(
                time.perf_counter() - started
            )

    def _check_table(self, table: str) -> None:
        if table not in ALL_TABLES:
            raise KeyError(f"Unknown table: {table}")

    # -- reads ---------------------------------------------------------------

    async def get(self, table: str, record_id: str) -> Record | None:
        self._check_table(table)
        key = _record_key(self._prefix, table, record_id)
        raw = await self._run("get", lambda: self.redis.get(key))
        return _deserialize(raw)

    async def list_by_filter(
        self,
        table: str,
        where: RecordFilter,
        order_by: str,
        *,
        descending: bool = False,
    ) -> list[Record]:
        self._check_table(table)
        normalised = RecordFilter(
            equals={k: _normalise(v) for k, v in where.equals.items()},
            not_equals={k: _normalise(v) for k, v in where.not_equals.items()},
        )

        async def _work() -> list[Record]:
            ids = await self.redis.smembers(_ids_key(self._prefix, table))
            if not ids:
                return []
            keys = [
                _record_key(
                    self._prefix,
                    table,
                    i.decode("utf-8") if isinstance(i, bytes) else i,
                )
                for i in ids
            ]
            raws = await self.redis.mget(keys)
            records = [r for r in (_deserialize(raw) for raw in raws) if r is not None]
            return [r for r in records if normalised.matches(r)]

        matched = await self._run("list", _work)
        # ISO-8601 UTC strings sort chronologically
        matched.sort(key=lambda r: r[order_by], reverse=descending)
        return matched

    # -- writes --------------------------------------------------------------

    async def insert(self, table: str, fields: Mapping[str, Any]) -> Record:
        self._check_table(table)
        record_id = fields["id"]
        key = _record_key(self._prefix, table, record_id)
        payload = _serialize(fields)

        async def _work() -> bool:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(key, payload, nx=True)
                pipe.sadd(_ids_key(self._prefix, table), record_id)
                created, _ = await pipe.execute()
            return bool(created)

        if not await self._run("insert", _work):
            raise ConflictError(f"Duplicate id in {table}: {record_id}")
        return _deserialize(payload) or {}

    async def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> int:
        self._check_table(table)
        key = _record_key(self._prefix, table, record_id)

        async def _work() -> int:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = _deserialize(await pipe.get(key))
                        if current is None or not _fields_match(current, expected):
                            await pipe.unwatch()
                            return 0
                        current.update(_deserialize(_serialize(changes)) or {})
                        pipe.multi()
                        pipe.set(key, _serialize(current))
                        await pipe.execute()
                        return 1
                    except WatchError:
                        logger.debug("WATCH conflict on %s, re-comparing", key)
                        continue

        return await self._run("update", _work)

    async def conditional_delete(
        self,
        table: str,
        record_id: str,
        expected: Mapping[str, Any],
    ) -> int:
        self._check_table(table)
        key = _record_key(self._prefix, table, record_id)

        async def _work() -> int:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = _deserialize(await pipe.get(key))
                        if current is None or not _fields_match(current, expected):
                            await pipe.unwatch()
                            return 0
                        pipe.multi()
                        pipe.delete(key)
                        pipe.srem(_ids_key(self._prefix, table), record_id)
                        await pipe.execute()
                        return 1
                    except WatchError:
                        logger.debug("WATCH conflict on %s, re-comparing", key)
                        continue

        return await self._run("delete", _work)
