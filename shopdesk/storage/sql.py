"""Document tables on top of a SQL database.

Both SQL backends store each collection as ``(id, data, updated_at)``
rows where ``data`` is the JSON document; intent templates also carry a
``category`` column for filtering.  Subclasses supply the connection
handling (``_transaction``), the JSON column type and the encoding of the
document parameter.  SQL is written with ``%s`` placeholders and adapted
for drivers that use ``?``.
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from typing import Any, ContextManager

from shopdesk.storage.base import DataService, StorageError, require_key

logger = logging.getLogger(__name__)

_STATISTICS_KEY = "global"

TABLES = {
    "customers": "shopdesk_customers",
    "statistics": "shopdesk_statistics",
    "intent_templates": "shopdesk_intent_templates",
    "sessions": "shopdesk_sessions",
}


class SqlDocumentService(DataService):
    """Shared CRUD for SQL-backed document collections."""

    PLACEHOLDER = "%s"
    JSON_TYPE = "TEXT"
    FOR_UPDATE = ""

    @abstractmethod
    def _transaction(self) -> ContextManager[Any]:
        """Yield an object with ``execute(sql, params)``; commit on success.

        Driver errors must surface as StorageError.
        """

    def _encode(self, doc: dict[str, Any]) -> Any:
        return json.dumps(doc, ensure_ascii=False, default=str)

    @staticmethod
    def _decode(value: Any) -> dict[str, Any]:
        if isinstance(value, dict):
            return value
        return json.loads(value)

    def _sql(self, sql: str) -> str:
        return sql if self.PLACEHOLDER == "%s" else sql.replace("%s", self.PLACEHOLDER)

    def create_schema(self) -> None:
        """Create the document tables if they don't exist. Idempotent."""
        with self._transaction() as conn:
            for name, table in TABLES.items():
                extra = ", category TEXT" if name == "intent_templates" else ""
                conn.execute(
                    f"""CREATE TABLE IF NOT EXISTS {table} (
                        id         TEXT PRIMARY KEY,
                        data       {self.JSON_TYPE} NOT NULL{extra},
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )"""
                )
        logger.info("%s document tables ready", self.backend_type.value)

    # ── Generic document helpers ─────────────────────────────────────────

    def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute(
                self._sql(f"SELECT data FROM {TABLES[collection]} WHERE id = %s"),
                (key,),
            ).fetchone()
        return self._decode(row[0]) if row else None

    def _insert(self, collection: str, key: str, doc: dict[str, Any], category: str | None = None) -> dict[str, Any]:
        table = TABLES[collection]
        if collection == "intent_templates":
            sql = f"INSERT INTO {table} (id, data, category) VALUES (%s, %s, %s) ON CONFLICT (id) DO NOTHING"
            params: tuple = (key, self._encode(doc), category)
        else:
            sql = f"INSERT INTO {table} (id, data) VALUES (%s, %s) ON CONFLICT (id) DO NOTHING"
            params = (key, self._encode(doc))
        with self._transaction() as conn:
            cur = conn.execute(self._sql(sql), params)
            if cur.rowcount == 0:
                raise StorageError(f"{collection} record {key!r} already exists", self.backend_type)
        return doc

    def _merge(self, collection: str, key: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        table = TABLES[collection]
        with self._transaction() as conn:
            row = conn.execute(
                self._sql(f"SELECT data FROM {table} WHERE id = %s{self.FOR_UPDATE}"),
                (key,),
            ).fetchone()
            if row is None:
                return None
            doc = self._decode(row[0])
            doc.update(updates)
            if collection == "intent_templates":
                conn.execute(
                    self._sql(f"UPDATE {table} SET data = %s, category = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s"),
                    (self._encode(doc), doc.get("category"), key),
                )
            else:
                conn.execute(
                    self._sql(f"UPDATE {table} SET data = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s"),
                    (self._encode(doc), key),
                )
        return doc

    def _put(self, collection: str, key: str, doc: dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                self._sql(
                    f"""INSERT INTO {TABLES[collection]} (id, data) VALUES (%s, %s)
                        ON CONFLICT (id) DO UPDATE
                        SET data = excluded.data, updated_at = CURRENT_TIMESTAMP"""
                ),
                (key, self._encode(doc)),
            )

    def _delete(self, collection: str, key: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                self._sql(f"DELETE FROM {TABLES[collection]} WHERE id = %s"),
                (key,),
            )
            return cur.rowcount > 0

    # ── Contract ─────────────────────────────────────────────────────────

    def test_connection(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    def get_customer(self, client_id: str) -> dict[str, Any] | None:
        return self._get("customers", client_id)

    def get_all_customers(self) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(f"SELECT data FROM {TABLES['customers']} ORDER BY id").fetchall()
        return [self._decode(r[0]) for r in rows]

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
        table = TABLES["intent_templates"]
        with self._transaction() as conn:
            if category is None:
                rows = conn.execute(f"SELECT data FROM {table} ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    self._sql(f"SELECT data FROM {table} WHERE category = %s ORDER BY id"),
                    (category,),
                ).fetchall()
        return [self._decode(r[0]) for r in rows]

    def get_intent_template(self, name: str) -> dict[str, Any] | None:
        return self._get("intent_templates", name)

    def create_intent_template(self, template: dict[str, Any]) -> dict[str, Any]:
        key = require_key(template, "name", self.backend_type)
        return self._insert("intent_templates", key, template, category=template.get("category"))

    def update_intent_template(self, name: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        return self._merge("intent_templates", name, updates)

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        return self._get("sessions", session_id)

    def save_session(self, record: dict[str, Any]) -> None:
        key = require_key(record, "id", self.backend_type)
        self._put("sessions", key, record)

    def delete_session(self, session_id: str) -> bool:
        return self._delete("sessions", session_id)
