"""Persistence adapters: asyncpg pool, shared counter stores, SQLAlchemy metadata."""
