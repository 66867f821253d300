"""Record store backends and typed repositories.

Backends implement :class:`swapmarket.core.interfaces.IRecordStore`:

*  ``InMemoryRecordStore``: dict-backed, for tests and local runs.
*  ``SqlRecordStore``: SQLAlchemy async (Postgres / SQLite).
*  ``RedisRecordStore``: one JSON value per record, WATCH/MULTI CAS.
"""
