"""SQLAlchemy async persistence (PostgreSQL in production, SQLite in tests)."""
