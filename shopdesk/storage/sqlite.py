"""Embedded SQLite backend.

One connection shared across threads, serialized by a lock.  WAL mode so
readers in other processes (e.g. a reporting script) don't block writes.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from shopdesk.storage.base import BackendType, StorageError
from shopdesk.storage.sql import SqlDocumentService

logger = logging.getLogger(__name__)


class SQLiteDataService(SqlDocumentService):
    backend_type = BackendType.SQLITE
    PLACEHOLDER = "?"

    def __init__(self, path: str | Path, timeout: float = 5.0):
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, timeout=timeout, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open SQLite database {self.path}: {e}", self.backend_type) from e
        self._closed = False
        self.create_schema()
        logger.info("SQLite data service opened: %s", self.path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StorageError("SQLite data service is closed", self.backend_type)
        try:
            with self._lock, self._conn:
                yield self._conn
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}", self.backend_type) from e

    def cleanup(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.close()
            except sqlite3.Error:
                logger.warning("SQLite close failed for %s", self.path, exc_info=True)
        logger.info("SQLite data service closed: %s", self.path)
