"""Business logic dispatcher: runs the strategies for every classified message.

Per message:
1. Resolve the client id (parsed message, else the transport envelope).
   A missing id or a payload that fails validation is reported as a failed
   DispatchResult; no session is created.
2. Under the client's session lock, look up or create the session.
3. Run the enabled strategies in fixed order (statistics, behavior,
   auto_reply).  Each runs in its own fault boundary: an exception is
   logged, the strategy is listed in ``failed_strategies`` and the others
   still run.  Results are merged into the session as each strategy
   finishes, so auto-reply sees the customer name behavior just merged.
4. Append a history entry, persist the session.
5. Hand the "processed" event to every sink (e.g. the Redis bus).

``submit()`` runs dispatches on a thread pool.  Messages from one client are
processed strictly in submission order; different clients run concurrently.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from pydantic import ValidationError

from shopdesk.config import REPLY_MODES, ConfigManager
from shopdesk.messages import ClassifiedMessage
from shopdesk.sessions.manager import SessionStore
from shopdesk.sessions.models import HistoryEntry, Session
from shopdesk.storage.factory import DataServiceFactory
from shopdesk.strategies.auto_reply import AutoReplyStrategy
from shopdesk.strategies.base import Strategy, StrategyError, client_tag
from shopdesk.strategies.customer_behavior import CustomerBehaviorStrategy
from shopdesk.strategies.statistics import StatisticsStrategy

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], None]

# strategy name -> config flag that enables it
_ENABLE_FLAGS = {
    "statistics": "statistics_enabled",
    "behavior": "customer_behavior_enabled",
    "auto_reply": "auto_reply_enabled",
}


@dataclass
class DispatchResult:
    """Outcome of one dispatch."""
    success: bool
    session_id: str | None = None
    timestamp: float = field(default_factory=time.time)
    statistics: dict[str, Any] | None = None
    behavior: dict[str, Any] | None = None
    auto_reply: dict[str, Any] | None = None
    failed_strategies: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def should_auto_send(self) -> bool:
        return bool(self.auto_reply and self.auto_reply.get("shouldAutoSend"))

    def outputs(self) -> dict[str, Any]:
        """Strategy outputs that were produced, keyed by strategy name."""
        return {
            name: value
            for name, value in (
                ("statistics", self.statistics),
                ("behavior", self.behavior),
                ("auto_reply", self.auto_reply),
            )
            if value is not None
        }

    def to_event(self) -> dict[str, Any]:
        """The "processed" event handed to the transport layer."""
        event: dict[str, Any] = {"sessionId": self.session_id, "timestamp": self.timestamp}
        if self.statistics is not None:
            event["statistics"] = self.statistics
        if self.behavior is not None:
            event["behavior"] = self.behavior
        if self.auto_reply is not None:
            event["autoReply"] = self.auto_reply
        if self.failed_strategies:
            event["failedStrategies"] = list(self.failed_strategies)
        return event

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BusinessLogicDispatcher:
    """Orchestrates the strategies for each classified message."""

    def __init__(
        self,
        config: ConfigManager,
        sessions: SessionStore,
        *,
        statistics: StatisticsStrategy | None = None,
        behavior: CustomerBehaviorStrategy | None = None,
        auto_reply: AutoReplyStrategy | None = None,
        sinks: tuple[EventSink, ...] | list[EventSink] = (),
        max_workers: int = 8,
    ):
        self._config = config
        self.sessions = sessions
        self.statistics = statistics
        self.behavior = behavior
        self.auto_reply = auto_reply
        self._sinks = list(sinks)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="shopdesk-dispatch")
        self._queue_lock = threading.Lock()
        self._queues: dict[str, deque[tuple[ClassifiedMessage | dict[str, Any], Future]]] = {}
        self._draining: set[str] = set()
        self._outstanding: set[Future] = set()
        self._accepting = True
        if auto_reply is not None:
            auto_reply.set_reply_mode(config.get("reply_mode"))
        config.subscribe(self._on_config_change)

    # ── Pipeline ─────────────────────────────────────────────────────────

    def _pipeline(self) -> list[Strategy]:
        ordered: list[Strategy | None] = [self.statistics, self.behavior, self.auto_reply]
        return [
            s for s in ordered
            if s is not None and self._config.get(_ENABLE_FLAGS[s.name], False)
        ]

    def process(self, message: ClassifiedMessage | dict[str, Any]) -> DispatchResult:
        """Dispatch one classified message synchronously."""
        if not self._accepting:
            return DispatchResult(success=False, error="dispatcher is shut down")
        return self._dispatch(message)

    def _dispatch(self, message: ClassifiedMessage | dict[str, Any]) -> DispatchResult:
        try:
            msg = message if isinstance(message, ClassifiedMessage) else ClassifiedMessage.model_validate(message)
        except ValidationError as e:
            logger.warning("Rejected malformed classified message: %d validation errors", e.error_count())
            return DispatchResult(success=False, error=f"invalid classified message: {e.error_count()} validation errors")

        client_id = msg.client_id
        if not client_id:
            logger.warning("Rejected classified message without client id")
            return DispatchResult(success=False, error="missing client id")

        try:
            with self.sessions.lock(client_id):
                session, created = self.sessions.get_or_create(client_id)
                if created:
                    logger.debug("New session for %s", client_tag(client_id))
                result = self._run(msg, session)
        except Exception as e:
            logger.exception("Dispatch failed for %s", client_tag(client_id))
            return DispatchResult(success=False, session_id=client_id, error=str(e))

        self._emit(result)
        logger.info(
            "Processed message for %s: intent=%s auto_reply=%s failed=%s",
            client_tag(client_id), msg.top_intent_name,
            result.auto_reply is not None, result.failed_strategies or "-",
        )
        return result

    def _run(self, msg: ClassifiedMessage, session: Session) -> DispatchResult:
        session.message_count += 1
        session.touch()
        result = DispatchResult(success=True, session_id=session.id)

        for strategy in self._pipeline():
            try:
                output = strategy.process(msg, session)
            except Exception:
                logger.warning("Strategy %s failed for %s", strategy.name, client_tag(session.id), exc_info=True)
                result.failed_strategies.append(strategy.name)
                continue
            setattr(result, strategy.name, output.to_dict())
            self._merge(session, strategy.name, output)

        top = msg.top_intent
        session.append_history(HistoryEntry(
            timestamp=time.time(),
            message=msg.summary(),
            intent=top.model_dump() if top is not None else None,
            results=result.outputs(),
        ))
        self.sessions.save(session)
        return result

    @staticmethod
    def _merge(session: Session, name: str, output: Any) -> None:
        now = time.time()
        if name == "behavior":
            session.customer_info = {**session.customer_info, **output.customer_profile, "last_updated": now}
        elif name == "statistics":
            session.statistics = {**session.statistics, **asdict(output), "last_updated": now}

    def _emit(self, result: DispatchResult) -> None:
        event = result.to_event()
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:
                logger.warning("Processed-event sink failed", exc_info=True)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    # ── Concurrent submission ────────────────────────────────────────────

    def submit(self, message: ClassifiedMessage | dict[str, Any]) -> Future:
        """Queue a message for background dispatch.

        Raises RuntimeError after shutdown.
        """
        key = self._queue_key(message)
        future: Future = Future()
        with self._queue_lock:
            if not self._accepting:
                raise RuntimeError("dispatcher is shut down")
            self._queues.setdefault(key, deque()).append((message, future))
            self._outstanding.add(future)
            future.add_done_callback(self._forget)
            if key in self._draining:
                return future
            self._draining.add(key)
        self._executor.submit(self._drain, key)
        return future

    def _drain(self, key: str) -> None:
        while True:
            with self._queue_lock:
                queue = self._queues.get(key)
                if not queue:
                    self._queues.pop(key, None)
                    self._draining.discard(key)
                    return
                message, future = queue.popleft()
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self._dispatch(message))
            except Exception as e:
                future.set_exception(e)

    def _forget(self, future: Future) -> None:
        with self._queue_lock:
            self._outstanding.discard(future)

    @staticmethod
    def _queue_key(message: ClassifiedMessage | dict[str, Any]) -> str:
        if isinstance(message, ClassifiedMessage):
            return message.client_id or ""
        try:
            return ClassifiedMessage.model_validate(message).client_id or ""
        except ValidationError:
            return ""

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        self.sessions.start()
        for strategy in (self.statistics, self.behavior, self.auto_reply):
            if strategy is not None:
                strategy.start()
        logger.info("Dispatcher started")

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Stop accepting work, let in-flight dispatches finish, flush strategies."""
        with self._queue_lock:
            self._accepting = False
            pending = list(self._outstanding)
        if wait and pending:
            done, not_done = wait_futures(pending, timeout=timeout)
            if not_done:
                logger.warning("%d dispatches still running after %.1fs", len(not_done), timeout)
        self._executor.shutdown(wait=False)
        self._config.unsubscribe(self._on_config_change)

        for strategy in (self.statistics, self.behavior, self.auto_reply):
            if strategy is None:
                continue
            try:
                strategy.dispose()
            except Exception:
                logger.warning("Disposing strategy %s failed", strategy.name, exc_info=True)
        self.sessions.stop()
        logger.info("Dispatcher shut down")

    # ── Administrative operations ────────────────────────────────────────

    def set_auto_reply_enabled(self, enabled: bool) -> bool:
        self._config.set("auto_reply_enabled", bool(enabled))
        logger.info("Auto-reply %s", "enabled" if enabled else "disabled")
        return bool(enabled)

    def add_rule(self, intent: str, pattern: str, reply: str) -> bool:
        """Add an auto-reply rule. Raises InvalidRuleError for a bad pattern."""
        return self._require_auto_reply().add_rule(intent, pattern, reply)

    def set_reply_mode(self, mode: str) -> None:
        """Raises ValueError for an unknown mode."""
        self._require_auto_reply()
        if mode not in REPLY_MODES:
            raise ValueError(f"Unknown reply mode: {mode} (expected one of {', '.join(REPLY_MODES)})")
        self._config.set("reply_mode", mode)

    def _on_config_change(self, key: str, old: Any, new: Any) -> None:
        # auto-reply tunables follow the config, whoever changed it
        if self.auto_reply is None:
            return
        if key == "reply_mode":
            self.auto_reply.set_reply_mode(new)
        elif key == "confidence_threshold":
            self.auto_reply.confidence_threshold = new
        elif key == "max_replies_per_intent":
            self.auto_reply.max_replies_per_intent = new

    def get_statistics(self, kind: str = "global", count: int = 20) -> dict[str, Any]:
        if self.statistics is None:
            raise StrategyError("statistics strategy is not configured")
        return self.statistics.get_statistics(kind, count)

    def get_session_statistics(self, session_id: str) -> dict[str, Any] | None:
        if self.statistics is None:
            return None
        return self.statistics.get_session_statistics(session_id)

    def set_customer_info(self, client_id: str, info: dict[str, Any]) -> dict[str, Any]:
        if self.behavior is None:
            raise StrategyError("customer behavior strategy is not configured")
        return self.behavior.set_customer_info(client_id, info)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [
            {
                "id": s.id,
                "created_at": s.created_at,
                "last_activity": s.last_activity,
                "message_count": s.message_count,
                "has_customer_info": bool(s.customer_info),
                "has_statistics": bool(s.statistics),
                "history_length": len(s.history),
            }
            for s in self.sessions.all()
        ]

    def get_session_detail(self, session_id: str) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        with self.sessions.lock(session_id):
            return session.to_dict()

    def cleanup_sessions(self, max_age: float = 7200.0) -> int:
        return self.sessions.cleanup(max_age)

    def status(self) -> dict[str, Any]:
        return {
            "accepting": self._accepting,
            "sessions": len(self.sessions),
            "strategies": {
                name: self._config.get(flag, False) for name, flag in _ENABLE_FLAGS.items()
            },
            "reply_mode": self.auto_reply.reply_mode if self.auto_reply is not None else None,
        }

    def _require_auto_reply(self) -> AutoReplyStrategy:
        if self.auto_reply is None:
            raise StrategyError("auto-reply strategy is not configured")
        return self.auto_reply


def create_dispatcher(
    config: ConfigManager,
    factory: DataServiceFactory,
    sinks: tuple[EventSink, ...] | list[EventSink] = (),
) -> BusinessLogicDispatcher:
    """Wire the standard pipeline: all three strategies on the factory's active handle."""
    s = config.settings
    provider = factory.current
    return BusinessLogicDispatcher(
        config,
        SessionStore(
            timeout=s.session_timeout,
            sweep_interval=s.session_sweep_interval,
            data_service=provider,
            flush_interval=s.session_flush_interval,
        ),
        statistics=StatisticsStrategy(provider, save_interval=s.statistics_save_interval),
        behavior=CustomerBehaviorStrategy(
            provider, max_profiles=s.max_customer_profiles, save_interval=s.behavior_save_interval,
        ),
        auto_reply=AutoReplyStrategy(
            provider,
            reply_mode=s.reply_mode,
            confidence_threshold=s.confidence_threshold,
            max_replies_per_intent=s.max_replies_per_intent,
        ),
        sinks=sinks,
    )
