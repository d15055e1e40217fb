"""Operator alerts raised by background monitoring.

Health and pool problems originate in timers, so they are never raised as
exceptions.  They are recorded here, logged, and optionally forwarded to a
sink (e.g. the Redis bus, see ``shopdesk.bus.make_alert_sink``).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """A single alert record."""

    level: AlertLevel
    message: str
    source: str = ""
    timestamp: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["level"] = self.level.value
        return d


AlertSink = Callable[[Alert], None]


class AlertLog:
    """In-memory alert log.

    Capped at 1000 entries for memory safety.
    """

    MAX_ENTRIES = 1000

    def __init__(self, sink: AlertSink | None = None) -> None:
        self._alerts: list[Alert] = []
        self._lock = threading.Lock()
        self._sink = sink

    def record(
        self,
        level: AlertLevel,
        message: str,
        *,
        source: str = "",
        details: dict[str, Any] | None = None,
    ) -> Alert:
        alert = Alert(
            level=level,
            message=message,
            source=source,
            timestamp=time.time(),
            details=details or {},
        )
        with self._lock:
            self._alerts.append(alert)
            if len(self._alerts) > self.MAX_ENTRIES:
                self._alerts = self._alerts[-self.MAX_ENTRIES:]

        if level == AlertLevel.CRITICAL:
            logger.error("ALERT [%s] %s: %s", level.value, source, message)
        else:
            logger.warning("ALERT [%s] %s: %s", level.value, source, message)

        if self._sink is not None:
            try:
                self._sink(alert)
            except Exception:
                logger.warning("Alert sink failed", exc_info=True)
        return alert

    def recent(self, seconds: float = 3600) -> list[Alert]:
        cutoff = time.time() - seconds
        with self._lock:
            return [a for a in self._alerts if a.timestamp >= cutoff]

    def all(self) -> list[Alert]:
        with self._lock:
            return list(self._alerts)

    def summary(self, seconds: float = 3600) -> dict[str, Any]:
        alerts = self.recent(seconds)
        by_level: dict[str, int] = {}
        by_source: dict[str, int] = {}
        for a in alerts:
            by_level[a.level.value] = by_level.get(a.level.value, 0) + 1
            if a.source:
                by_source[a.source] = by_source.get(a.source, 0) + 1
        return {"total": len(alerts), "by_level": by_level, "by_source": by_source}

    def clear(self) -> None:
        with self._lock:
            self._alerts.clear()
