"""In-memory stand-in backend.

Last link of the failover chain: it cannot fail to construct, so the
factory always has something to hand out.  Also the base for the JSON
file backend, which adds load/flush around the same collections.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any

from shopdesk.storage.base import BackendType, DataService, StorageError, require_key

logger = logging.getLogger(__name__)

COLLECTIONS = ("customers", "statistics", "intent_templates", "sessions")
_STATISTICS_KEY = "global"


class MockDataService(DataService):
    """Dict-backed DataService. Records are copied in and out."""

    backend_type = BackendType.MOCK

    def __init__(self, seed: dict[str, dict[str, Any]] | None = None):
        self._lock = threading.RLock()
        self._data: dict[str, dict[str, Any]] = {name: {} for name in COLLECTIONS}
        if seed:
            for name, docs in seed.items():
                if name in self._data:
                    self._data[name].update(copy.deepcopy(docs))
        self.closed = False

    def test_connection(self) -> None:
        if self.closed:
            raise StorageError("Mock data service has been cleaned up", self.backend_type)

    def cleanup(self) -> None:
        with self._lock:
            self.closed = True
            for docs in self._data.values():
                docs.clear()

    # ── Generic document helpers ─────────────────────────────────────────

    def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        with self._lock:
            doc = self._data[collection].get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def _insert(self, collection: str, key: str, doc: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            if key in self._data[collection]:
                raise StorageError(f"{collection} record {key!r} already exists", self.backend_type)
            self._data[collection][key] = copy.deepcopy(doc)
            self._mutated()
            return copy.deepcopy(doc)

    def _merge(self, collection: str, key: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            doc = self._data[collection].get(key)
            if doc is None:
                return None
            doc.update(copy.deepcopy(updates))
            self._mutated()
            return copy.deepcopy(doc)

    def _put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        with self._lock:
            self._data[collection][key] = copy.deepcopy(doc)
            self._mutated()

    def _delete(self, collection: str, key: str) -> bool:
        with self._lock:
            removed = self._data[collection].pop(key, None)
            if removed is not None:
                self._mutated()
            return removed is not None

    def _mutated(self) -> None:
        """Called with the lock held after every write."""

    # ── Contract ─────────────────────────────────────────────────────────

    def get_customer(self, client_id: str) -> dict[str, Any] | None:
        return self._get("customers", client_id)

    def get_all_customers(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._data["customers"].values()]

    def create_customer(self, record: dict[str, Any]) -> dict[str, Any]:
        key = require_key(record, "client_id", self.backend_type)
        return self._insert("customers", key, record)

    def update_customer(self, client_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        return self._merge("customers", client_id, updates)

    def get_statistics(self) -> dict[str, Any] | None:
        return self._get("statistics", _STATISTICS_KEY)

    def save_statistics(self, snapshot: dict[str, Any]) -> None:
        self._put("statistics", _STATISTICS_KEY, snapshot)

    def get_all_intent_templates(self, category: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._data["intent_templates"].values()]
        if category is not None:
            docs = [d for d in docs if d.get("category") == category]
        return docs

    def get_intent_template(self, name: str) -> dict[str, Any] | None:
        return self._get("intent_templates", name)

    def create_intent_template(self, template: dict[str, Any]) -> dict[str, Any]:
        key = require_key(template, "name", self.backend_type)
        return self._insert("intent_templates", key, template)

    def update_intent_template(self, name: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        return self._merge("intent_templates", name, updates)

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        return self._get("sessions", session_id)

    def save_session(self, record: dict[str, Any]) -> None:
        key = require_key(record, "id", self.backend_type)
        self._put("sessions", key, record)

    def delete_session(self, session_id: str) -> bool:
        return self._delete("sessions", session_id)
