"""Uniform storage contract shared by every backend.

Each backend persists four document collections: customers (keyed by
client id), a singleton statistics snapshot, intent templates (keyed by
name) and sessions (keyed by session id).  Records are plain JSON-able
dicts.

Optional hooks are not part of the ABC: backends that expose
``get_connection_pool_stats`` / ``get_connection_pool_health`` take part in
pool monitoring, and ``cleanup`` is called when a handle is disposed.
Callers must look them up with ``getattr``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class BackendType(str, Enum):
    POSTGRES = "postgres"  # networked document store
    SQLITE = "sqlite"      # embedded relational store
    JSON = "json"          # flat-file store
    MOCK = "mock"          # in-memory stand-in

    @classmethod
    def parse(cls, value: str | BackendType) -> BackendType:
        if isinstance(value, BackendType):
            return value
        v = str(value).strip().lower()
        if v == "file":
            return cls.JSON
        try:
            return cls(v)
        except ValueError:
            raise StorageError(
                f"Unsupported backend type: {value!r} "
                f"(supported: {', '.join(t.value for t in cls)})"
            ) from None


# Order tried after the requested backend fails
FALLBACK_ORDER: tuple[BackendType, ...] = (
    BackendType.SQLITE,
    BackendType.JSON,
    BackendType.MOCK,
)

AUTO_REPLY_CATEGORY = "auto_reply"


class StorageError(Exception):
    """A backend could not be built, validated, read or written."""

    def __init__(self, message: str, backend: BackendType | None = None):
        super().__init__(message)
        self.backend = backend


class DataService(ABC):
    """CRUD contract implemented by every storage backend."""

    backend_type: BackendType

    @abstractmethod
    def test_connection(self) -> None:
        """Liveness check. Raises StorageError when the backend is unusable."""

    # ── Customers ────────────────────────────────────────────────────────

    @abstractmethod
    def get_customer(self, client_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def get_all_customers(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    def create_customer(self, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a customer keyed by ``record['client_id']``."""

    @abstractmethod
    def update_customer(self, client_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        """Shallow-merge ``updates``; None when the customer does not exist."""

    # ── Statistics ───────────────────────────────────────────────────────

    @abstractmethod
    def get_statistics(self) -> dict[str, Any] | None: ...

    @abstractmethod
    def save_statistics(self, snapshot: dict[str, Any]) -> None: ...

    # ── Intent templates ─────────────────────────────────────────────────

    @abstractmethod
    def get_all_intent_templates(self, category: str | None = None) -> list[dict[str, Any]]: ...

    @abstractmethod
    def get_intent_template(self, name: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def create_intent_template(self, template: dict[str, Any]) -> dict[str, Any]:
        """Insert a template keyed by ``template['name']``."""

    @abstractmethod
    def update_intent_template(self, name: str, updates: dict[str, Any]) -> dict[str, Any] | None: ...

    # ── Sessions ─────────────────────────────────────────────────────────

    @abstractmethod
    def get_session(self, session_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def save_session(self, record: dict[str, Any]) -> None:
        """Upsert a session document keyed by ``record['id']``."""

    @abstractmethod
    def delete_session(self, session_id: str) -> bool: ...


def require_key(record: dict[str, Any], key: str, backend: BackendType) -> str:
    value = record.get(key)
    if not value:
        raise StorageError(f"Record is missing required key {key!r}", backend)
    return str(value)
