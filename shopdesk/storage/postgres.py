"""PostgreSQL document-store backend.

Documents are stored as JSONB rows, one table per collection, through a
``psycopg_pool.ConnectionPool``.  This is the only backend with a real
connection pool, so it is the one that exposes the pool-statistics and
pool-health hooks the factory's monitor looks for.

Connection validation retries transient ``OperationalError``s with
backoff before the factory gives up and fails over.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from shopdesk.storage.base import BackendType, StorageError
from shopdesk.storage.retry import retry_with_backoff
from shopdesk.storage.sql import SqlDocumentService

logger = logging.getLogger(__name__)

_CREDENTIALS_RE = re.compile(r"//[^@/]+@")


def sanitize_url(url: str) -> str:
    """Mask credentials in a connection URL before it is logged."""
    return _CREDENTIALS_RE.sub("//***:***@", url)


class PostgresDataService(SqlDocumentService):
    backend_type = BackendType.POSTGRES
    JSON_TYPE = "JSONB"
    FOR_UPDATE = " FOR UPDATE"

    def __init__(
        self,
        url: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        connect_timeout: float = 10.0,
        retries: int = 2,
    ):
        self.url = url
        self.max_size = max_size
        self._retries = retries
        self._pool = ConnectionPool(
            url,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            open=False,
            name="shopdesk",
        )
        try:
            retry_with_backoff((psycopg.OperationalError,), max_retries=retries)(
                self._open
            )(connect_timeout)
        except psycopg.Error as e:
            self._pool.close()
            raise StorageError(
                f"Cannot connect to {sanitize_url(url)}: {e}", self.backend_type
            ) from e
        try:
            self.create_schema()
        except StorageError:
            self._pool.close()
            raise
        logger.info("Postgres data service connected: %s (pool %d-%d)", sanitize_url(url), min_size, max_size)

    def _open(self, timeout: float) -> None:
        self._pool.open(wait=True, timeout=timeout)

    @contextmanager
    def _transaction(self) -> Iterator[psycopg.Connection]:
        try:
            with self._pool.connection() as conn:
                yield conn
        except psycopg.Error as e:
            raise StorageError(f"Postgres error: {e}", self.backend_type) from e

    def _encode(self, doc: dict[str, Any]) -> Any:
        return Jsonb(doc)

    def test_connection(self) -> None:
        if self._pool.closed:
            raise StorageError("Postgres pool is closed", self.backend_type)
        retry_with_backoff((StorageError,), max_retries=self._retries)(super().test_connection)()

    # ── Optional hooks ───────────────────────────────────────────────────

    def get_connection_pool_stats(self) -> dict[str, Any]:
        stats = self._pool.get_stats()
        size = stats.get("pool_size", 0)
        idle = stats.get("pool_available", 0)
        return {
            "active": max(size - idle, 0),
            "idle": idle,
            "total": size,
            "pending": stats.get("requests_waiting", 0),
            "max_connections": stats.get("pool_max", self.max_size),
            "type": self.backend_type.value,
            "status": "closed" if self._pool.closed else "open",
        }

    def get_connection_pool_health(self) -> dict[str, Any]:
        if self._pool.closed:
            return {"healthy": False, "status": "closed", "message": "connection pool is closed"}
        try:
            with self._pool.connection(timeout=2.0) as conn:
                conn.execute("SELECT 1")
        except psycopg.Error as e:
            return {"healthy": False, "status": "error", "message": str(e)[:200]}
        return {"healthy": True, "status": "connected", "message": "ok"}

    def cleanup(self) -> None:
        self._pool.close()
        logger.info("Postgres data service closed: %s", sanitize_url(self.url))
