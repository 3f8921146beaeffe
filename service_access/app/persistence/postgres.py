"""
PostgreSQL persistence layer for the Access Service.
"""

import asyncio
import json
from typing import Dict, Any, Optional, List

import asyncpg

from shared.logging import get_logger
from shared.errors import ConcurrentModification, PersistenceUnavailable
from .store import DocumentStore, StoredDocument


class PostgresDocumentStore(DocumentStore):
    """Versioned documents in a single ``documents`` table."""

    def __init__(self, dsn: str, timeout_seconds: float = 5.0):
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger("access.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=self.timeout_seconds
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")

        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise PersistenceUnavailable("PostgreSQL could not be started", details={"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection VARCHAR(64) NOT NULL,
                    key VARCHAR(512) NOT NULL,
                    version INTEGER NOT NULL,
                    body JSONB NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (collection, key)
                );
            """)

    async def _run(self, operation: str, coro):
        """Bound every backend call by the configured timeout."""
        if self.pool is None:
            coro.close()
            raise PersistenceUnavailable("PostgreSQL persistence not started")
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            self.logger.error("PostgreSQL call timed out", operation=operation, timeout=self.timeout_seconds)
            raise PersistenceUnavailable(
                f"PostgreSQL {operation} timed out",
                details={"timeout_seconds": self.timeout_seconds}
            ) from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            self.logger.error("PostgreSQL call failed", operation=operation, error=str(e))
            raise PersistenceUnavailable(f"PostgreSQL {operation} failed", details={"error": str(e)}) from e

    async def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        async def _get():
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(
                    "SELECT key, version, body FROM documents WHERE collection = $1 AND key = $2",
                    collection, key
                )

        row = await self._run("get", _get())
        if row is None:
            return None
        return self._row_to_document(row)

    async def put(self, collection: str, key: str, body: Dict[str, Any], expected_version: int) -> int:
        payload = json.dumps(body)

        async def _put():
            async with self.pool.acquire() as conn:
                if expected_version == 0:
                    return await conn.fetchval("""
                        INSERT INTO documents (collection, key, version, body)
                        VALUES ($1, $2, 1, $3::jsonb)
                        ON CONFLICT (collection, key) DO NOTHING
                        RETURNING version
                    """, collection, key, payload)

                return await conn.fetchval("""
                    UPDATE documents
                    SET body = $3::jsonb, version = version + 1, updated_at = NOW()
                    WHERE collection = $1 AND key = $2 AND version = $4
                    RETURNING version
                """, collection, key, payload, expected_version)

        new_version = await self._run("put", _put())
        if new_version is None:
            raise ConcurrentModification(
                details={"collection": collection, "key": key, "expected_version": expected_version}
            )
        return new_version

    async def list(self, collection: str, prefix: str = "") -> List[StoredDocument]:
        async def _list():
            async with self.pool.acquire() as conn:
                return await conn.fetch("""
                    SELECT key, version, body FROM documents
                    WHERE collection = $1 AND starts_with(key, $2)
                    ORDER BY key
                """, collection, prefix)

        rows = await self._run("list", _list())
        return [self._row_to_document(row) for row in rows]

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            await self._run("health_check", self._ping())
            return True
        except PersistenceUnavailable:
            return False

    async def _ping(self):
        async with self.pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    @staticmethod
    def _row_to_document(row) -> StoredDocument:
        body = row["body"]
        if isinstance(body, str):
            body = json.loads(body)
        return StoredDocument(key=row["key"], body=body, version=row["version"])
