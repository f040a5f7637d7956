"""asyncpg connection pool shared by the PostgreSQL stores."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from ..errors import PersistenceFailed
from ..logging import get_logger

logger = get_logger(__name__)

STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    id VARCHAR(255) PRIMARY KEY,
    email VARCHAR(255),
    subscription_tier VARCHAR(50) DEFAULT 'free',
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS conversations (
    id UUID PRIMARY KEY,
    user_id VARCHAR(255) NOT NULL,
    title VARCHAR(255),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS messages (
    id SERIAL PRIMARY KEY,
    conversation_id UUID NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
    role VARCHAR(20) NOT NULL,
    content TEXT NOT NULL,
    tokens_used INTEGER DEFAULT 0,
    model VARCHAR(100),
    metadata JSONB,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
ON messages (conversation_id, created_at);

CREATE TABLE IF NOT EXISTS usage_records (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(255) NOT NULL,
    period_start TIMESTAMP NOT NULL,
    period_end TIMESTAMP NOT NULL,
    messages_count INTEGER DEFAULT 0,
    tokens_used BIGINT DEFAULT 0,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    UNIQUE (user_id, period_start)
);
"""


class Database:
    """Owns the asyncpg pool; stores borrow connections through ``connection()``."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.dsn, min_size=self.min_size, max_size=self.max_size)
            logger.info("database_connected", pool_min=self.min_size, pool_max=self.max_size)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_closed")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a pooled connection; driver failures surface as ``PersistenceFailed``."""
        if self._pool is None:
            raise PersistenceFailed("database pool is not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except STORAGE_ERRORS as e:
            raise PersistenceFailed(f"{type(e).__name__}: {e}") from e

    async def create_tables(self) -> None:
        async with self.connection() as conn:
            await conn.execute(SCHEMA)

    async def ping(self) -> bool:
        try:
            async with self.connection() as conn:
                await conn.fetchval("SELECT 1")
        except PersistenceFailed as e:
            logger.warning("database_ping_failed", error=str(e))
            return False
        return True
