"""Statistics strategy: global counters plus per-session buckets.

Global counters (persisted): message count, session count, intent
distribution, 24 hourly buckets (local hour of day), date-keyed daily buckets
(UTC date), the top-100 keyword ranking and the average messages per session.  The average
is recomputed after every message so ``avg == messages / sessions`` always
holds once a session has been seen.

Per-session buckets are ephemeral: rebuilt from message flow, never
persisted.  The first message of a session allocates its bucket and bumps
the global session count.

Keyword counts are cumulative and never decay.  Every keyword ever seen keeps
its count (persisted as ``keyword_counts``), and the top-100 ranking is
derived from those counts, so a late but frequent keyword can still climb
into it.

Snapshots are saved on a timer (default hourly) and on dispose; a failed
save is logged and retried on the next tick.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from shopdesk.messages import ClassifiedMessage
from shopdesk.sessions.models import Session
from shopdesk.strategies.base import DataServiceProvider, client_tag
from shopdesk.timers import PeriodicTask

logger = logging.getLogger(__name__)

TOP_KEYWORDS_LIMIT = 100
DEFAULT_KEYWORD_COUNT = 20
STATISTICS_KINDS = ("global", "daily", "hourly", "intent", "keywords", "all")


def empty_snapshot(now: float | None = None) -> dict[str, Any]:
    return {
        "message_count": 0,
        "session_count": 0,
        "intent_distribution": {},
        "hourly_message_count": [0] * 24,
        "daily_message_count": {},
        "avg_messages_per_session": 0.0,
        "top_keywords": [],
        "last_updated": time.time() if now is None else now,
    }


def _stored_keyword_counts(stored: dict[str, Any]) -> Counter[str]:
    """Keyword counts from a snapshot; older snapshots only carry the ranking."""
    counts = stored.get("keyword_counts")
    if isinstance(counts, dict):
        return Counter({str(w): int(c) for w, c in counts.items()})
    return Counter({e["word"]: int(e.get("count", 0)) for e in stored.get("top_keywords") or [] if "word" in e})


@dataclass
class SessionBucket:
    start_time: float
    message_count: int = 0
    intents: dict[str, int] = field(default_factory=dict)
    keywords: dict[str, int] = field(default_factory=dict)
    last_activity: float = 0.0
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        ranked = sorted(self.keywords.items(), key=lambda kv: kv[1], reverse=True)
        return {
            "start_time": self.start_time,
            "message_count": self.message_count,
            "intents": dict(self.intents),
            "keywords": [{"word": w, "count": c} for w, c in ranked],
            "last_activity": self.last_activity,
            "duration": self.duration,
        }


@dataclass
class StatsResult:
    message_count: int
    session_count: int
    session_messages_count: int
    intent: str
    intent_confidence: float
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageCount": self.message_count,
            "sessionCount": self.session_count,
            "sessionMessagesCount": self.session_messages_count,
            "intent": self.intent,
            "intentConfidence": self.intent_confidence,
            "timestamp": self.timestamp,
        }


class StatisticsStrategy:
    """Aggregates message flow into global and per-session counters."""

    name = "statistics"

    def __init__(
        self,
        data_service: DataServiceProvider | None = None,
        *,
        save_interval: float = 3600.0,
        load: bool = True,
    ):
        self._data_service = data_service
        self._lock = threading.RLock()
        self._stats = empty_snapshot()
        self._sessions: dict[str, SessionBucket] = {}
        self._keyword_counts: Counter[str] = Counter()
        self._saver = PeriodicTask("statistics-save", save_interval, self.save) if save_interval > 0 else None
        if load:
            self.load()

    # ── Processing ───────────────────────────────────────────────────────

    def process(self, message: ClassifiedMessage, session: Session) -> StatsResult:
        ts = message.effective_timestamp()
        top = message.top_intent
        intent = top.intent if top is not None else "unknown"
        keywords = list(message.keywords)

        with self._lock:
            self._update_global(intent, ts, keywords)
            self._update_session(session.id, intent, ts, keywords)
            self._recompute_average()
            result = StatsResult(
                message_count=self._stats["message_count"],
                session_count=self._stats["session_count"],
                session_messages_count=session.message_count,
                intent=intent,
                intent_confidence=top.confidence if top is not None else 0.0,
                timestamp=ts,
            )
        logger.debug("Statistics updated for %s: intent=%s total=%d", client_tag(session.id), intent, result.message_count)
        return result

    def _update_global(self, intent: str, ts: float, keywords: list[str]) -> None:
        s = self._stats
        s["message_count"] += 1
        dist = s["intent_distribution"]
        dist[intent] = dist.get(intent, 0) + 1

        s["hourly_message_count"][datetime.fromtimestamp(ts).hour] += 1
        day = datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")
        daily = s["daily_message_count"]
        daily[day] = daily.get(day, 0) + 1

        self._update_top_keywords(keywords)

    def _update_top_keywords(self, keywords: list[str]) -> None:
        if not keywords:
            return
        self._keyword_counts.update(keywords)
        self._rank_keywords()

    def _rank_keywords(self) -> None:
        # most_common keeps first-seen order among equal counts
        self._stats["top_keywords"] = [
            {"word": word, "count": count}
            for word, count in self._keyword_counts.most_common(TOP_KEYWORDS_LIMIT)
        ]

    def _update_session(self, session_id: str, intent: str, ts: float, keywords: list[str]) -> None:
        bucket = self._sessions.get(session_id)
        if bucket is None:
            self._stats["session_count"] += 1
            bucket = SessionBucket(start_time=ts, last_activity=ts)
            self._sessions[session_id] = bucket
        bucket.message_count += 1
        bucket.intents[intent] = bucket.intents.get(intent, 0) + 1
        for word in keywords:
            bucket.keywords[word] = bucket.keywords.get(word, 0) + 1
        bucket.last_activity = ts
        bucket.duration = ts - bucket.start_time

    def _recompute_average(self) -> None:
        s = self._stats
        if s["session_count"] > 0:
            s["avg_messages_per_session"] = s["message_count"] / s["session_count"]

    # ── Queries ──────────────────────────────────────────────────────────

    def get_statistics(self, kind: str = "global", count: int = DEFAULT_KEYWORD_COUNT) -> dict[str, Any]:
        """Return one view of the global counters.

        Raises ValueError for an unknown ``kind``.
        """
        with self._lock:
            s = self._stats
            if kind == "global":
                return {
                    "message_count": s["message_count"],
                    "session_count": s["session_count"],
                    "avg_messages_per_session": s["avg_messages_per_session"],
                    "last_updated": s["last_updated"],
                }
            if kind == "daily":
                return {"daily_message_count": dict(s["daily_message_count"])}
            if kind == "hourly":
                return {"hourly_message_count": list(s["hourly_message_count"])}
            if kind == "intent":
                return {"intent_distribution": dict(s["intent_distribution"])}
            if kind == "keywords":
                return {"top_keywords": copy.deepcopy(s["top_keywords"][: max(count, 0)])}
            if kind == "all":
                return copy.deepcopy(s)
        raise ValueError(f"Unknown statistics kind: {kind} (expected one of {', '.join(STATISTICS_KINDS)})")

    def get_session_statistics(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            bucket = self._sessions.get(session_id)
            return bucket.to_dict() if bucket is not None else None

    def reset(self, keep_sessions: bool = False) -> None:
        """Zero the global counters, optionally keeping per-session buckets.

        Kept buckets still count as sessions, so replaying the same messages
        afterwards reproduces the same global counters.
        """
        with self._lock:
            self._stats = empty_snapshot()
            self._keyword_counts.clear()
            if keep_sessions:
                self._stats["session_count"] = len(self._sessions)
            else:
                self._sessions.clear()
        logger.info("Statistics reset (keep_sessions=%s)", keep_sessions)
        self.save()

    # ── Persistence ──────────────────────────────────────────────────────

    def load(self) -> bool:
        if self._data_service is None:
            return False
        try:
            stored = self._data_service().get_statistics()
        except Exception:
            logger.warning("Loading statistics failed, starting from zero", exc_info=True)
            return False
        if not stored:
            return False
        with self._lock:
            base = empty_snapshot()
            base.update({k: v for k, v in stored.items() if k in base})
            if len(base["hourly_message_count"]) != 24:
                logger.warning("Stored hourly buckets malformed, resetting them")
                base["hourly_message_count"] = [0] * 24
            self._stats = base
            self._keyword_counts = _stored_keyword_counts(stored)
            self._rank_keywords()
        logger.info("Statistics loaded: %d messages, %d sessions", base["message_count"], base["session_count"])
        return True

    def save(self) -> bool:
        """Persist the global snapshot. Returns False on failure."""
        if self._data_service is None:
            return False
        with self._lock:
            self._stats["last_updated"] = time.time()
            snapshot = copy.deepcopy(self._stats)
            snapshot["keyword_counts"] = dict(self._keyword_counts)
        try:
            self._data_service().save_statistics(snapshot)
        except Exception:
            logger.warning("Saving statistics failed, will retry next interval", exc_info=True)
            return False
        logger.debug("Statistics saved")
        return True

    def start(self) -> None:
        if self._saver is not None:
            self._saver.start()

    def dispose(self) -> None:
        if self._saver is not None:
            self._saver.stop()
        self.save()
