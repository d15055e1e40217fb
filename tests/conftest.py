"""Shared fixtures for the shopdesk test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from shopdesk.config import ConfigManager, Settings
from shopdesk.messages import ClassifiedMessage
from shopdesk.sessions.models import Session, create_session
from shopdesk.storage.memory import MockDataService


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every file backend at a temp dir."""
    return Settings(
        database_type="mock",
        sqlite_path=str(tmp_path / "shopdesk.db"),
        json_path=str(tmp_path / "shopdesk.json"),
        auto_reply_enabled=True,
        health_check_interval=60,
        pool_monitor_interval=60,
        statistics_save_interval=3600,
        behavior_save_interval=3600,
    )


@pytest.fixture()
def config(settings: Settings) -> ConfigManager:
    return ConfigManager(settings)


@pytest.fixture()
def mock_service() -> MockDataService:
    return MockDataService()


@pytest.fixture()
def session() -> Session:
    return create_session("client-1")


@pytest.fixture()
def make_message() -> Callable[..., ClassifiedMessage]:
    """Build a classified message the way the upstream classifier emits it."""

    def _make(
        client_id: str | None = "client-1",
        content: str = "你好",
        intents: list[tuple[str, float]] | None = None,
        keywords: list[str] | None = None,
        timestamp: float | None = None,
    ) -> ClassifiedMessage:
        scored = [{"intent": i, "confidence": c} for i, c in (intents or [])]
        payload: dict[str, Any] = {
            "parsedMessage": {
                "clientId": client_id,
                "cleanContent": content,
                "tokens": list(content),
                "keywords": keywords or [],
            },
            "intents": scored,
            "bestIntent": scored[0] if scored else None,
            "timestamp": timestamp,
        }
        return ClassifiedMessage.model_validate(payload)

    return _make
