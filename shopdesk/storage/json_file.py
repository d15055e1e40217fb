"""Flat-file JSON backend.

All collections live in one JSON document.  Every write rewrites the file
atomically (temp file + ``os.replace``) so a crash never leaves a torn
document behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from shopdesk.storage.base import BackendType, StorageError
from shopdesk.storage.memory import COLLECTIONS, MockDataService

logger = logging.getLogger(__name__)


class JsonFileDataService(MockDataService):
    """MockDataService whose collections are mirrored to a JSON file."""

    backend_type = BackendType.JSON

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {self.path.parent}: {e}", self.backend_type) from e
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {self.path}: {e}", self.backend_type) from e
        if not isinstance(raw, dict):
            raise StorageError(f"{self.path} does not hold a JSON object", self.backend_type)
        with self._lock:
            for name in COLLECTIONS:
                docs = raw.get(name)
                if isinstance(docs, dict):
                    self._data[name] = docs
        logger.info(
            "JSON store loaded from %s (%s)",
            self.path,
            ", ".join(f"{n}={len(self._data[n])}" for n in COLLECTIONS),
        )

    def _mutated(self) -> None:
        self._flush()

    def _flush(self) -> None:
        fd, tmp = tempfile.mkstemp(prefix=".shopdesk-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, default=str)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StorageError(f"Cannot write {self.path}: {e}", self.backend_type) from e

    def test_connection(self) -> None:
        super().test_connection()
        if not os.access(self.path.parent, os.W_OK):
            raise StorageError(f"Data directory {self.path.parent} is not writable", self.backend_type)
        if self.path.exists() and not os.access(self.path, os.R_OK | os.W_OK):
            raise StorageError(f"{self.path} is not readable/writable", self.backend_type)

    def cleanup(self) -> None:
        # Keep the file; only drop the in-memory copy.
        with self._lock:
            self.closed = True
            for docs in self._data.values():
                docs.clear()
