"""Tests for the storage backends (mock, JSON file, SQLite).

Every backend must honor the same contract, so most tests run against all
three through the ``service`` fixture.  Postgres has its own module.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from shopdesk.storage.base import AUTO_REPLY_CATEGORY, FALLBACK_ORDER, BackendType, StorageError
from shopdesk.storage.json_file import JsonFileDataService
from shopdesk.storage.memory import MockDataService
from shopdesk.storage.retry import compute_delay, retry_with_backoff
from shopdesk.storage.sqlite import SQLiteDataService


@pytest.fixture(params=["mock", "json", "sqlite"])
def service(request, tmp_path: Path):
    if request.param == "mock":
        svc = MockDataService()
    elif request.param == "json":
        svc = JsonFileDataService(tmp_path / "store.json")
    else:
        svc = SQLiteDataService(tmp_path / "store.db")
    yield svc
    svc.cleanup()


# ── BackendType ───────────────────────────────────────────────────────────


class TestBackendType:
    def test_parse(self):
        assert BackendType.parse("SQLite") is BackendType.SQLITE
        assert BackendType.parse("file") is BackendType.JSON
        assert BackendType.parse(BackendType.MOCK) is BackendType.MOCK

    def test_parse_unknown(self):
        with pytest.raises(StorageError, match="Unsupported backend type"):
            BackendType.parse("oracle")

    def test_fallback_order(self):
        assert FALLBACK_ORDER == (BackendType.SQLITE, BackendType.JSON, BackendType.MOCK)


# ── Contract (all backends) ───────────────────────────────────────────────


class TestContract:
    def test_connection_check(self, service):
        service.test_connection()

    def test_customer_crud(self, service):
        assert service.get_customer("c1") is None
        service.create_customer({"client_id": "c1", "message_count": 1})
        assert service.get_customer("c1")["message_count"] == 1

        merged = service.update_customer("c1", {"message_count": 2, "name": "小李"})
        assert merged == {"client_id": "c1", "message_count": 2, "name": "小李"}
        assert service.get_customer("c1") == merged

    def test_update_missing_customer_returns_none(self, service):
        assert service.update_customer("ghost", {"x": 1}) is None

    def test_duplicate_create_raises(self, service):
        service.create_customer({"client_id": "c1"})
        with pytest.raises(StorageError):
            service.create_customer({"client_id": "c1"})

    def test_create_without_key_raises(self, service):
        with pytest.raises(StorageError, match="client_id"):
            service.create_customer({"name": "anon"})

    def test_get_all_customers(self, service):
        service.create_customer({"client_id": "a"})
        service.create_customer({"client_id": "b"})
        ids = sorted(c["client_id"] for c in service.get_all_customers())
        assert ids == ["a", "b"]

    def test_statistics_snapshot(self, service):
        assert service.get_statistics() is None
        service.save_statistics({"message_count": 3})
        service.save_statistics({"message_count": 4})
        assert service.get_statistics() == {"message_count": 4}

    def test_intent_templates(self, service):
        rule_set = {
            "name": "price_inquiry",
            "category": AUTO_REPLY_CATEGORY,
            "rules": [{"pattern": ".*多少钱.*", "reply": "价格见详情页"}],
        }
        service.create_intent_template(rule_set)
        service.create_intent_template({"name": "misc", "category": "other"})

        assert service.get_intent_template("price_inquiry")["rules"][0]["reply"] == "价格见详情页"
        assert len(service.get_all_intent_templates()) == 2
        auto = service.get_all_intent_templates(AUTO_REPLY_CATEGORY)
        assert [t["name"] for t in auto] == ["price_inquiry"]

        service.update_intent_template("misc", {"category": AUTO_REPLY_CATEGORY})
        assert len(service.get_all_intent_templates(AUTO_REPLY_CATEGORY)) == 2

    def test_sessions(self, service):
        service.save_session({"id": "s1", "message_count": 1})
        service.save_session({"id": "s1", "message_count": 2})
        assert service.get_session("s1")["message_count"] == 2
        assert service.delete_session("s1") is True
        assert service.delete_session("s1") is False
        assert service.get_session("s1") is None

    def test_returned_records_are_copies(self, service):
        service.create_customer({"client_id": "c1", "tags": ["vip"]})
        record = service.get_customer("c1")
        record["tags"].append("mutated")
        assert service.get_customer("c1")["tags"] == ["vip"]

    def test_unicode_survives(self, service):
        service.create_customer({"client_id": "c1", "note": "发货时间"})
        assert service.get_customer("c1")["note"] == "发货时间"


# ── Mock ──────────────────────────────────────────────────────────────────


class TestMockDataService:
    def test_seed(self):
        svc = MockDataService(seed={"customers": {"c1": {"client_id": "c1"}}})
        assert svc.get_customer("c1") == {"client_id": "c1"}

    def test_cleanup_fails_connection_check(self):
        svc = MockDataService()
        svc.cleanup()
        with pytest.raises(StorageError):
            svc.test_connection()

    def test_no_pool_hooks(self):
        assert not hasattr(MockDataService(), "get_connection_pool_stats")


# ── JSON file ─────────────────────────────────────────────────────────────


class TestJsonFileDataService:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        JsonFileDataService(path).create_customer({"client_id": "c1", "n": 1})
        reopened = JsonFileDataService(path)
        assert reopened.get_customer("c1") == {"client_id": "c1", "n": 1}

    def test_file_is_valid_json(self, tmp_path):
        path = tmp_path / "store.json"
        JsonFileDataService(path).save_statistics({"message_count": 7})
        doc = json.loads(path.read_text(encoding="utf-8"))
        assert doc["statistics"]["global"] == {"message_count": 7}

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            JsonFileDataService(path)

    def test_cleanup_keeps_file(self, tmp_path):
        path = tmp_path / "store.json"
        svc = JsonFileDataService(path)
        svc.create_customer({"client_id": "c1"})
        svc.cleanup()
        assert path.exists()


# ── SQLite ────────────────────────────────────────────────────────────────


class TestSQLiteDataService:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "store.db"
        first = SQLiteDataService(path)
        first.create_customer({"client_id": "c1"})
        first.cleanup()
        second = SQLiteDataService(path)
        assert second.get_customer("c1") == {"client_id": "c1"}
        second.cleanup()

    def test_closed_handle_fails_connection_check(self, tmp_path):
        svc = SQLiteDataService(tmp_path / "store.db")
        svc.cleanup()
        with pytest.raises(StorageError):
            svc.test_connection()

    def test_in_memory_database(self):
        svc = SQLiteDataService(":memory:")
        svc.save_session({"id": "s1"})
        assert svc.get_session("s1") == {"id": "s1"}
        svc.cleanup()

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        with pytest.raises(StorageError):
            SQLiteDataService(blocker / "store.db")


# ── Retry ─────────────────────────────────────────────────────────────────


class TestRetry:
    def test_retries_then_succeeds(self, monkeypatch):
        monkeypatch.setattr("shopdesk.storage.retry.time.sleep", lambda s: None)
        calls = []

        @retry_with_backoff((ConnectionError,), max_retries=2)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("transient")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_retries(self, monkeypatch):
        monkeypatch.setattr("shopdesk.storage.retry.time.sleep", lambda s: None)

        @retry_with_backoff((ConnectionError,), max_retries=1)
        def always_down():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            always_down()

    def test_non_retryable_raises_immediately(self):
        calls = []

        @retry_with_backoff((ConnectionError,), max_retries=3)
        def bad():
            calls.append(1)
            raise ValueError("not transient")

        with pytest.raises(ValueError):
            bad()
        assert len(calls) == 1

    def test_delay_is_capped(self):
        for attempt in range(10):
            assert 0 <= compute_delay(attempt, 0.5, 4.0, 0.3) <= 4.0 * 1.3
