"""
asyncpg pool for the PostgreSQL repository.

JSON/JSONB columns are decoded to Python objects on every pooled connection,
so repositories pass dicts and lists straight through.
"""

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_pool: Optional[asyncpg.Pool] = None


def _json_dumps(value) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def init_db_pool(
    database_url: str,
    min_size: int = 2,
    max_size: int = 10,
    command_timeout: float = 60.0,
) -> asyncpg.Pool:
    """Create the shared pool once at startup; later calls return it unchanged."""
    global _pool

    if _pool is not None:
        logger.warning("Database pool already initialized")
        return _pool

    logger.info("Connecting schedule store (pool %s..%s)", min_size, max_size)
    try:
        _pool = await asyncpg.create_pool(
            database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
            init=_init_connection,
        )
    except Exception as e:
        logger.error(f"Failed to initialize database pool: {e}")
        raise
    return _pool


async def close_db_pool() -> None:
    global _pool

    if _pool is None:
        return
    await _pool.close()
    _pool = None
    logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_db_pool() first.")
    return _pool


@asynccontextmanager
async def get_connection():
    async with get_pool().acquire() as connection:
        yield connection


@asynccontextmanager
async def transaction():
    """
    One connection, one transaction.

        async with transaction() as conn:
            await conn.execute("UPDATE events SET ... WHERE id = $1", event_id)
    """
    async with get_connection() as conn:
        async with conn.transaction():
            yield conn


def affected_rows(status: str) -> int:
    """ "UPDATE 3" -> 3"""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError, AttributeError):
        return 0


async def execute(query: str, *args) -> str:
    async with get_connection() as conn:
        return await conn.execute(query, *args)


async def fetch(query: str, *args) -> list:
    async with get_connection() as conn:
        return await conn.fetch(query, *args)


async def fetchrow(query: str, *args):
    async with get_connection() as conn:
        return await conn.fetchrow(query, *args)


async def fetchval(query: str, *args):
    async with get_connection() as conn:
        return await conn.fetchval(query, *args)


async def init_schema(schema_path: Path = SCHEMA_PATH) -> None:
    """Apply schema.sql; every statement in it is idempotent."""
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    async with get_connection() as conn:
        await conn.execute(schema_path.read_text(encoding="utf-8"))
    logger.info(f"Applied schema from {schema_path.name}")


async def health_check() -> dict:
    try:
        await fetchval("SELECT 1")
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}

    pool = get_pool()
    return {
        "status": "healthy",
        "database": "connected",
        "pool_size": pool.get_size(),
        "pool_free": pool.get_idle_size(),
    }
