"""Conversation session data models.

One Session per client id.  History is bounded (oldest entries dropped
first) and ``last_activity`` never moves backwards, even when messages
arrive with out-of-order timestamps.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any

MAX_HISTORY = 100


@dataclass
class HistoryEntry:
    """One processed message and what the strategies made of it."""
    timestamp: float
    message: dict[str, Any] = field(default_factory=dict)
    intent: dict[str, Any] | None = None
    results: dict[str, Any] = field(default_factory=dict)


@dataclass
class Session:
    """Per-client conversational state."""
    id: str
    created_at: float = 0.0
    last_activity: float = 0.0
    message_count: int = 0
    history: list[HistoryEntry] = field(default_factory=list)
    customer_info: dict[str, Any] = field(default_factory=dict)
    statistics: dict[str, Any] = field(default_factory=dict)

    def touch(self, ts: float | None = None) -> None:
        ts = time.time() if ts is None else ts
        if ts > self.last_activity:
            self.last_activity = ts

    def append_history(self, entry: HistoryEntry) -> None:
        self.history.append(entry)
        if len(self.history) > MAX_HISTORY:
            del self.history[: len(self.history) - MAX_HISTORY]

    def idle_for(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return now - self.last_activity

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Session:
        history = [
            h if isinstance(h, HistoryEntry) else HistoryEntry(**h)
            for h in d.get("history", [])
        ][-MAX_HISTORY:]
        known = {k: v for k, v in d.items() if k in Session.__dataclass_fields__ and k != "history"}
        return Session(history=history, **known)


def create_session(client_id: str, now: float | None = None) -> Session:
    """Create a fresh session for ``client_id``."""
    now = time.time() if now is None else now
    return Session(id=client_id, created_at=now, last_activity=now)
