"""
Fixtures for tests that run against a real PostgreSQL (with pgvector).

Point TEST_DATABASE_URL at a disposable database; the schema is applied
on first use and every table is truncated between tests.
"""

import os
import uuid
from pathlib import Path

import psycopg
import pytest_asyncio

from app.db import pool as pool_module
from app.db.pool import DatabasePoolManager

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")
SCHEMA_PATH = Path(__file__).resolve().parents[2] / "app" / "db" / "schema.sql"

TABLES = (
    "embeddings",
    "interactions",
    "contact_identities",
    "contacts",
    "raw_records",
    "sync_cursors",
    "jobs",
    "ai_usage_windows",
    "oauth_tokens",
    "users",
)


@pytest_asyncio.fixture
async def db(monkeypatch):
    """A live pool installed in place of the application pool."""
    async with await psycopg.AsyncConnection.connect(TEST_DATABASE_URL, autocommit=True) as conn:
        await conn.execute(SCHEMA_PATH.read_text())
        await conn.execute(f"TRUNCATE {', '.join(TABLES)} CASCADE")

    manager = DatabasePoolManager(conninfo=TEST_DATABASE_URL)
    await manager.initialize()
    monkeypatch.setattr(pool_module, "db_pool", manager)
    try:
        yield manager
    finally:
        await manager.close()


@pytest_asyncio.fixture
async def user_id(db) -> str:
    new_id = str(uuid.uuid4())
    async with db.connection() as conn:
        await conn.execute(
            "INSERT INTO users (id, email) VALUES (%s, %s)", (new_id, "owner@example.org")
        )
    return new_id
