"""Tests for the HTTP surface: /dispatch, /health and the /admin routes."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from shopdesk.app import create_app


@pytest.fixture()
def client(config):
    app = create_app(config, use_bus=False)
    with TestClient(app) as c:
        yield c


def _payload(client_id="client-1", content="这个多少钱", intent="price_inquiry", confidence=0.9, keywords=()):
    return {
        "parsedMessage": {"clientId": client_id, "cleanContent": content, "keywords": list(keywords)},
        "intents": [{"intent": intent, "confidence": confidence}],
        "timestamp": 1772355600000,
    }


class TestDispatchRoute:
    def test_dispatch(self, client):
        resp = client.post("/dispatch", json=_payload())
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["session_id"] == "client-1"
        assert data["auto_reply"]["intent"] == "price_inquiry"

    def test_dispatch_without_client_id(self, client):
        resp = client.post("/dispatch", json={"parsedMessage": {"cleanContent": "hi"}})
        assert resp.status_code == 400
        assert resp.json()["error"] == "missing client id"

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["storage"] == "mock"


class TestAutoReplyAdmin:
    def test_toggle(self, client, config):
        resp = client.post("/admin/auto-reply", json={"enabled": False})
        assert resp.json() == {"enabled": False}
        assert config.get("auto_reply_enabled") is False
        data = client.post("/dispatch", json=_payload()).json()
        assert data["auto_reply"] is None

    def test_add_rule(self, client):
        resp = client.post("/admin/auto-reply/rules", json={"intent": "shipping", "pattern": "发货", "reply": "48小时内发货"})
        assert resp.json() == {"added": True, "persisted": True}
        data = client.post("/dispatch", json=_payload(content="什么时候发货", intent="shipping")).json()
        assert data["auto_reply"]["message"] == "48小时内发货"

    def test_bad_pattern(self, client):
        resp = client.post("/admin/auto-reply/rules", json={"intent": "shipping", "pattern": "([", "reply": "x"})
        assert resp.status_code == 400
        assert "Invalid pattern" in resp.json()["error"]

    def test_missing_field(self, client):
        resp = client.post("/admin/auto-reply/rules", json={"intent": "shipping", "pattern": "发货"})
        assert resp.status_code == 422

    def test_mode(self, client):
        assert client.post("/admin/auto-reply/mode", json={"mode": "auto"}).json() == {"mode": "auto"}
        data = client.post("/dispatch", json=_payload()).json()
        assert data["auto_reply"]["shouldAutoSend"] is True

    def test_unknown_mode(self, client):
        resp = client.post("/admin/auto-reply/mode", json={"mode": "yolo"})
        assert resp.status_code == 400


class TestStatisticsAdmin:
    def test_statistics_kinds(self, client):
        client.post("/dispatch", json=_payload(keywords=["价格"]))
        assert client.get("/admin/statistics").json()["message_count"] == 1
        top = client.get("/admin/statistics", params={"kind": "keywords", "count": 5}).json()
        assert top == {"top_keywords": [{"word": "价格", "count": 1}]}
        daily = client.get("/admin/statistics", params={"kind": "daily"}).json()
        assert daily == {"daily_message_count": {"2026-03-01": 1}}

    def test_unknown_kind(self, client):
        resp = client.get("/admin/statistics", params={"kind": "weekly"})
        assert resp.status_code == 400


class TestSessionsAdmin:
    def test_list_and_detail(self, client):
        client.post("/dispatch", json=_payload(client_id="c1"))
        listing = client.get("/admin/sessions").json()
        assert listing["count"] == 1
        assert listing["sessions"][0]["id"] == "c1"

        detail = client.get("/admin/sessions/c1").json()
        assert detail["message_count"] == 1
        assert len(detail["history"]) == 1

        stats = client.get("/admin/sessions/c1/statistics").json()
        assert stats["message_count"] == 1

    def test_unknown_session(self, client):
        assert client.get("/admin/sessions/ghost").status_code == 404
        assert client.get("/admin/sessions/ghost/statistics").status_code == 404

    def test_cleanup(self, client):
        client.post("/dispatch", json=_payload(client_id="c1"))
        assert client.post("/admin/sessions/cleanup", json={"max_age_seconds": 3600}).json() == {"removed": 0}
        assert client.post("/admin/sessions/cleanup", json={"max_age_seconds": 0}).json() == {"removed": 1}
        assert client.get("/admin/sessions").json()["count"] == 0

    def test_negative_max_age_rejected(self, client):
        assert client.post("/admin/sessions/cleanup", json={"max_age_seconds": -1}).status_code == 422


class TestStorageStatus:
    def test_status(self, client):
        data = client.get("/admin/storage/status").json()
        assert data["storage"]["current_type"] == "mock"
        assert data["storage"]["health_check_running"] is True
        assert data["dispatcher"]["accepting"] is True
        assert data["dispatcher"]["reply_mode"] == "suggest"
