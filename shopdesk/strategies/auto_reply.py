"""Auto-reply strategy: pattern rules per intent, with a generic fallback.

Matching:
- No intents, or a top intent below ``confidence_threshold``: a default
  reply drawn at random from a small generic pool (confidence 0.3, intent
  ``default``, never auto-sent).
- Otherwise, for up to ``max_replies_per_intent`` top-ranked intents, the
  intent's rules are tried in order against the cleaned content
  (case-insensitive search); first match wins, else the rule set's own
  default reply, else nothing for that intent.
- The highest-confidence candidate is the reply; the others are returned as
  alternatives.  ``should_auto_send`` is true only in ``auto`` mode.

Patterns are compiled once when rules are loaded or added.  A pattern that
fails to compile in stored data is logged and skipped; ``add_rule`` rejects
it up front with InvalidRuleError.

Rules live in storage as intent templates tagged ``category="auto_reply"``;
every rule addition persists the whole set.
"""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from shopdesk.config import REPLY_MODES
from shopdesk.messages import ClassifiedMessage, IntentScore
from shopdesk.sessions.models import Session
from shopdesk.storage.base import AUTO_REPLY_CATEGORY
from shopdesk.strategies.base import DataServiceProvider, client_tag

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────────

DEFAULT_REPLIES = (
    "您好，感谢您的咨询。请问还有什么可以帮到您的吗？",
    "您的问题我们已经收到，稍后会给您回复。",
    "抱歉，我可能没有完全理解您的问题，能否请您重新描述一下？",
)
DEFAULT_REPLY_CONFIDENCE = 0.3
DEFAULT_INTENT = "default"
GENERIC_ADDRESS = "亲"

BUILTIN_RULES: list[dict[str, Any]] = [
    {
        "name": "greeting",
        "rules": [{"pattern": ".*", "reply": "您好！很高兴为您服务。有什么可以帮到您？"}],
    },
    {
        "name": "farewell",
        "rules": [{"pattern": ".*", "reply": "感谢您的咨询，祝您购物愉快！如有其他问题随时联系我。"}],
    },
    {
        "name": "price_inquiry",
        "rules": [
            {"pattern": ".*多少钱.*", "reply": "您好，该商品的具体价格请查看商品详情页面，如需了解更多优惠信息可以告诉我。"},
            {"pattern": ".*优惠.*", "reply": "目前我们有多种促销活动，具体可以参考商品详情页的活动说明。"},
        ],
    },
]


class InvalidRuleError(ValueError):
    """A rule was rejected (bad pattern or missing intent)."""


# ── Rule model ───────────────────────────────────────────────────────────


@dataclass
class Rule:
    pattern: str
    reply: str
    compiled: re.Pattern[str] | None = field(default=None, repr=False, compare=False)

    @classmethod
    def build(cls, pattern: str, reply: str) -> Rule:
        """Compile ``pattern``. Raises re.error if it is malformed."""
        return cls(pattern=pattern, reply=reply, compiled=re.compile(pattern, re.IGNORECASE))

    def to_dict(self) -> dict[str, str]:
        return {"pattern": self.pattern, "reply": self.reply}


@dataclass
class IntentRules:
    """All rules for one intent, in match order."""
    intent: str
    rules: list[Rule] = field(default_factory=list)
    default_reply: str | None = None

    def to_template(self) -> dict[str, Any]:
        return {
            "name": self.intent,
            "category": AUTO_REPLY_CATEGORY,
            "rules": [r.to_dict() for r in self.rules],
            "default_reply": self.default_reply,
        }

    @classmethod
    def from_template(cls, template: dict[str, Any]) -> IntentRules:
        intent = template.get("name") or template.get("intent") or ""
        rules: list[Rule] = []
        for raw in template.get("rules") or []:
            pattern = raw.get("pattern", "")
            try:
                rules.append(Rule.build(pattern, raw.get("reply", "")))
            except re.error as e:
                logger.warning("Skipping malformed pattern %r for intent %s: %s", pattern, intent, e)
                rules.append(Rule(pattern=pattern, reply=raw.get("reply", "")))
        default_reply = template.get("default_reply") or template.get("defaultReply")
        return cls(intent=intent, rules=rules, default_reply=default_reply)


# ── Results ──────────────────────────────────────────────────────────────


@dataclass
class ReplyCandidate:
    message: str
    confidence: float
    intent: str

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "confidence": self.confidence, "intent": self.intent, "isAutomatic": True}


@dataclass
class ReplyResult:
    """Outcome of one auto-reply pass (wire keys in ``to_dict``)."""
    message: str
    confidence: float
    intent: str
    mode: str
    should_auto_send: bool
    alternatives: list[ReplyCandidate] = field(default_factory=list)
    success: bool = True
    timestamp: float = field(default_factory=time.time)

    @property
    def is_default(self) -> bool:
        return self.intent == DEFAULT_INTENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "mode": self.mode,
            "message": self.message,
            "confidence": self.confidence,
            "intent": self.intent,
            "alternatives": [a.to_dict() for a in self.alternatives],
            "shouldAutoSend": self.should_auto_send,
            "timestamp": self.timestamp,
        }


# ── Template substitution ────────────────────────────────────────────────


def time_greeting(hour: int) -> str:
    if hour < 12:
        return "上午好"
    if hour < 18:
        return "下午好"
    return "晚上好"


def render_template(template: str, session: Session) -> str:
    """Fill ``{customerName}``, ``{timeGreeting}`` and ``{messageCount}``."""
    if not template:
        return template
    name = session.customer_info.get("name") or GENERIC_ADDRESS
    return (
        template.replace("{customerName}", str(name))
        .replace("{timeGreeting}", time_greeting(datetime.now().hour))
        .replace("{messageCount}", str(session.message_count or 0))
    )


# ── Strategy ─────────────────────────────────────────────────────────────


class AutoReplyStrategy:
    """Generates reply suggestions (or auto-sent replies) from intent rules."""

    name = "auto_reply"

    def __init__(
        self,
        data_service: DataServiceProvider | None = None,
        *,
        reply_mode: str = "suggest",
        confidence_threshold: float = 0.6,
        max_replies_per_intent: int = 3,
        load: bool = True,
    ):
        if reply_mode not in REPLY_MODES:
            raise ValueError(f"Unknown reply mode: {reply_mode}")
        self._data_service = data_service
        self._reply_mode = reply_mode
        self.confidence_threshold = confidence_threshold
        self.max_replies_per_intent = max_replies_per_intent
        self._lock = threading.RLock()
        self._rules: dict[str, IntentRules] = {}
        if load:
            self.load_rules()
        else:
            self._rules = self._builtin()
        logger.info(
            "Auto-reply strategy ready: mode=%s, threshold=%.2f, %d intents",
            reply_mode, confidence_threshold, len(self._rules),
        )

    # ── Rules ────────────────────────────────────────────────────────────

    def load_rules(self) -> int:
        """Load auto-reply templates from storage, seeding built-ins if none.

        Returns the number of intents loaded.
        """
        templates: list[dict[str, Any]] = []
        if self._data_service is not None:
            try:
                templates = self._data_service().get_all_intent_templates(AUTO_REPLY_CATEGORY)
            except Exception:
                logger.warning("Loading auto-reply rules failed, using built-ins", exc_info=True)
                templates = []

        if templates:
            rules = {}
            for t in templates:
                ir = IntentRules.from_template(t)
                if ir.intent:
                    rules[ir.intent] = ir
            with self._lock:
                self._rules = rules
            logger.info("Loaded %d auto-reply intents from storage", len(rules))
        else:
            with self._lock:
                self._rules = self._builtin()
            logger.info("No stored auto-reply rules, seeded %d built-in intents", len(self._rules))
            self._persist()
        return len(self._rules)

    def add_rule(self, intent: str, pattern: str, reply: str) -> bool:
        """Append a rule under ``intent`` and persist the whole rule set.

        Raises InvalidRuleError for an empty intent or a pattern that does
        not compile.  Returns False when the rule was kept in memory but
        could not be persisted.
        """
        if not intent:
            raise InvalidRuleError("intent is required")
        try:
            rule = Rule.build(pattern, reply)
        except re.error as e:
            raise InvalidRuleError(f"Invalid pattern {pattern!r}: {e}") from e
        with self._lock:
            entry = self._rules.get(intent)
            if entry is None:
                entry = IntentRules(intent=intent)
                self._rules[intent] = entry
            entry.rules.append(rule)
        logger.info("Auto-reply rule added: %s /%s/", intent, pattern)
        return self._persist()

    def rules(self) -> list[dict[str, Any]]:
        with self._lock:
            return [r.to_template() for r in self._rules.values()]

    # ── Mode ─────────────────────────────────────────────────────────────

    @property
    def reply_mode(self) -> str:
        return self._reply_mode

    def set_reply_mode(self, mode: str) -> None:
        if mode not in REPLY_MODES:
            raise ValueError(f"Unknown reply mode: {mode} (expected one of {', '.join(REPLY_MODES)})")
        self._reply_mode = mode
        logger.info("Auto-reply mode set to %s", mode)

    # ── Processing ───────────────────────────────────────────────────────

    def process(self, message: ClassifiedMessage, session: Session) -> ReplyResult:
        intents = sorted(message.intents, key=lambda i: i.confidence, reverse=True)
        if not intents or intents[0].confidence < self.confidence_threshold:
            return self.default_reply(session)

        candidates: list[ReplyCandidate] = []
        for scored in intents[: self.max_replies_per_intent]:
            text = self._reply_for(scored, message.content, session)
            if text is not None:
                candidates.append(ReplyCandidate(message=text, confidence=scored.confidence, intent=scored.intent))

        if not candidates:
            logger.debug("No rule matched for %s, using default reply", client_tag(session.id))
            return self.default_reply(session)

        best, *alternatives = candidates
        mode = self._reply_mode
        return ReplyResult(
            message=best.message,
            confidence=best.confidence,
            intent=best.intent,
            mode=mode,
            should_auto_send=mode == "auto",
            alternatives=alternatives,
        )

    def default_reply(self, session: Session) -> ReplyResult:
        return ReplyResult(
            message=render_template(random.choice(DEFAULT_REPLIES), session),
            confidence=DEFAULT_REPLY_CONFIDENCE,
            intent=DEFAULT_INTENT,
            mode=self._reply_mode,
            should_auto_send=False,
        )

    def start(self) -> None:
        pass

    def dispose(self) -> None:
        pass

    # ── Internals ────────────────────────────────────────────────────────

    def _reply_for(self, scored: IntentScore, content: str, session: Session) -> str | None:
        with self._lock:
            entry = self._rules.get(scored.intent)
            if entry is None:
                return None
            rules = list(entry.rules)
            default_reply = entry.default_reply

        for rule in rules:
            if rule.compiled is None:
                logger.debug("Skipping uncompiled pattern %r (%s)", rule.pattern, scored.intent)
                continue
            try:
                if rule.compiled.search(content):
                    return render_template(rule.reply, session)
            except Exception:
                logger.warning("Rule %r for %s failed", rule.pattern, scored.intent, exc_info=True)

        if default_reply:
            return render_template(default_reply, session)
        return None

    def _persist(self) -> bool:
        if self._data_service is None:
            return True
        templates = self.rules()
        try:
            service = self._data_service()
            for template in templates:
                if service.get_intent_template(template["name"]) is None:
                    service.create_intent_template(template)
                else:
                    service.update_intent_template(template["name"], template)
        except Exception:
            logger.warning("Persisting auto-reply rules failed", exc_info=True)
            return False
        return True

    @staticmethod
    def _builtin() -> dict[str, IntentRules]:
        return {t["name"]: IntentRules.from_template(t) for t in BUILTIN_RULES}
