"""Customer-behavior strategy: per-client profiles and interaction advice.

Each client gets a profile with intent and keyword histograms, a score per
behavior pattern and the last 20 interactions.  A pattern's score grows by
the number of its keywords found in the cleaned content or the extracted
keyword list.  The dominant trait is the pattern with the highest
score / message_count; equal scores resolve to the lexicographically first
pattern name.  Each trait maps to a static recommendation for how an agent
should approach the customer.

The profile table is capped (default 10,000).  When an insert pushes it
over the cap, the oldest 10% by ``last_activity`` (rounded up) are evicted.

Profiles are loaded from storage at startup and saved on a timer (default
30 minutes) and on dispose.  Only profiles touched since the last
successful save are written; each one is merged into its customer record,
or creates it.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from shopdesk.messages import ClassifiedMessage
from shopdesk.sessions.models import Session
from shopdesk.strategies.base import DataServiceProvider, client_tag
from shopdesk.timers import PeriodicTask

logger = logging.getLogger(__name__)

MAX_INTERACTIONS = 20
NEW_CUSTOMER_MESSAGES = 1
FREQUENT_CUSTOMER_MESSAGES = 10
TOP_N = 5

BEHAVIOR_PATTERNS: dict[str, tuple[str, ...]] = {
    "price_sensitive": ("价格", "便宜", "优惠", "打折", "促销", "便宜点"),
    "quality_focused": ("质量", "好评", "耐用", "材质", "品质", "保障"),
    "service_oriented": ("客服", "服务", "态度", "响应", "售后", "换货"),
    "shipping_concerned": ("发货", "物流", "快递", "送货", "到货", "时间"),
    "product_detail": ("尺寸", "颜色", "规格", "参数", "材料", "功能"),
}

RECOMMENDATIONS: dict[str, dict[str, Any]] = {
    "price_sensitive": {
        "focus": "价格与优惠",
        "tone": "强调实惠与价值",
        "prioritize": ["优惠信息", "性价比", "价格比较"],
    },
    "quality_focused": {
        "focus": "品质与性能",
        "tone": "专业详尽的说明",
        "prioritize": ["品质保障", "用户评价", "耐用程度"],
    },
    "service_oriented": {
        "focus": "服务体验",
        "tone": "热情且迅速回应",
        "prioritize": ["服务承诺", "售后保障", "响应速度"],
    },
    "shipping_concerned": {
        "focus": "物流与发货",
        "tone": "清晰的时间安排",
        "prioritize": ["发货时效", "物流跟踪", "送货方式"],
    },
    "product_detail": {
        "focus": "产品细节",
        "tone": "具体且详细",
        "prioritize": ["规格参数", "使用方法", "功能对比"],
    },
}

BALANCED_RECOMMENDATION: dict[str, Any] = {
    "focus": "综合信息",
    "tone": "平衡友好",
    "prioritize": ["基本信息", "常见问题", "个性化需求"],
}


def _ranked(counts: dict[str, int], n: int) -> list[dict[str, Any]]:
    ordered = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return [{"name": k, "count": v} for k, v in ordered[:n]]


# ── Profile ──────────────────────────────────────────────────────────────


@dataclass
class CustomerProfile:
    client_id: str
    first_seen: float
    last_activity: float
    message_count: int = 0
    intents: dict[str, int] = field(default_factory=dict)
    keywords: dict[str, int] = field(default_factory=dict)
    behavior_patterns: dict[str, int] = field(default_factory=dict)
    interactions: list[dict[str, Any]] = field(default_factory=list)
    info: dict[str, Any] = field(default_factory=dict)

    def record(self, content: str, keywords: list[str], intent: str, ts: float) -> None:
        if ts > self.last_activity:
            self.last_activity = ts
        self.message_count += 1
        self.intents[intent] = self.intents.get(intent, 0) + 1
        for word in keywords:
            self.keywords[word] = self.keywords.get(word, 0) + 1

        for name, words in BEHAVIOR_PATTERNS.items():
            hits = sum(1 for w in words if w in content or w in keywords)
            self.behavior_patterns[name] = self.behavior_patterns.get(name, 0) + hits

        self.interactions.append({"timestamp": ts, "content": content, "intent": intent, "keywords": list(keywords)})
        if len(self.interactions) > MAX_INTERACTIONS:
            del self.interactions[: len(self.interactions) - MAX_INTERACTIONS]

    def traits(self) -> dict[str, float]:
        count = max(1, self.message_count)
        return {name: min(1.0, score / count) for name, score in self.behavior_patterns.items()}

    def dominant_trait(self) -> str | None:
        count = max(1, self.message_count)
        best: str | None = None
        best_score = 0.0
        for name in sorted(self.behavior_patterns):
            score = self.behavior_patterns[name] / count
            if score > best_score:
                best, best_score = name, score
        return best

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> CustomerProfile:
        now = time.time()
        client_id = d.get("client_id") or d.get("id") or ""
        known = {k: v for k, v in d.items() if k in CustomerProfile.__dataclass_fields__ and k != "client_id"}
        known.setdefault("first_seen", now)
        known.setdefault("last_activity", known["first_seen"])
        profile = CustomerProfile(client_id=client_id, **known)
        profile.interactions = profile.interactions[-MAX_INTERACTIONS:]
        return profile


@dataclass
class BehaviorResult:
    client_id: str
    customer_profile: dict[str, Any]
    recommended_approach: dict[str, Any]
    top_keywords: list[dict[str, Any]]
    top_intents: list[dict[str, Any]]
    is_new_customer: bool
    is_frequent_customer: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "customerProfile": copy.deepcopy(self.customer_profile),
            "recommendedApproach": copy.deepcopy(self.recommended_approach),
            "topKeywords": self.top_keywords,
            "topIntents": self.top_intents,
            "isNewCustomer": self.is_new_customer,
            "isFrequentCustomer": self.is_frequent_customer,
        }


# ── Strategy ─────────────────────────────────────────────────────────────


class CustomerBehaviorStrategy:
    """Tracks customer profiles and recommends an interaction approach."""

    name = "behavior"

    def __init__(
        self,
        data_service: DataServiceProvider | None = None,
        *,
        max_profiles: int = 10_000,
        save_interval: float = 1800.0,
        load: bool = True,
    ):
        if max_profiles < 1:
            raise ValueError("max_profiles must be at least 1")
        self._data_service = data_service
        self.max_profiles = max_profiles
        self._lock = threading.RLock()
        self._profiles: dict[str, CustomerProfile] = {}
        self._dirty: set[str] = set()
        self._saver = PeriodicTask("behavior-save", save_interval, self.save) if save_interval > 0 else None
        if load:
            self.load()

    # ── Processing ───────────────────────────────────────────────────────

    def process(self, message: ClassifiedMessage, session: Session) -> BehaviorResult:
        client_id = session.id
        ts = message.effective_timestamp()
        with self._lock:
            profile = self._get_or_create(client_id)
            profile.record(message.content, list(message.keywords), message.top_intent_name, ts)
            self._dirty.add(client_id)

            dominant = profile.dominant_trait()
            customer_profile: dict[str, Any] = {
                **copy.deepcopy(profile.info),
                "last_activity": profile.last_activity,
                "message_count": profile.message_count,
                "dominant_trait": dominant,
                "traits": profile.traits(),
            }
            result = BehaviorResult(
                client_id=client_id,
                customer_profile=customer_profile,
                recommended_approach=copy.deepcopy(RECOMMENDATIONS.get(dominant or "", BALANCED_RECOMMENDATION)),
                top_keywords=_ranked(profile.keywords, TOP_N),
                top_intents=_ranked(profile.intents, TOP_N),
                is_new_customer=profile.message_count == NEW_CUSTOMER_MESSAGES,
                is_frequent_customer=profile.message_count > FREQUENT_CUSTOMER_MESSAGES,
            )
        logger.debug("Behavior for %s: dominant=%s messages=%d", client_tag(client_id), dominant, profile.message_count)
        return result

    def _get_or_create(self, client_id: str) -> CustomerProfile:
        profile = self._profiles.get(client_id)
        if profile is None:
            now = time.time()
            profile = CustomerProfile(client_id=client_id, first_seen=now, last_activity=now)
            self._profiles[client_id] = profile
            if len(self._profiles) > self.max_profiles:
                self._evict_oldest(keep=client_id)
        return profile

    def _evict_oldest(self, keep: str) -> int:
        count = -(-len(self._profiles) // 10)
        candidates = sorted(
            (p for cid, p in self._profiles.items() if cid != keep),
            key=lambda p: p.last_activity,
        )
        for profile in candidates[:count]:
            del self._profiles[profile.client_id]
            self._dirty.discard(profile.client_id)
        logger.info("Evicted %d oldest customer profiles (cap %d)", min(count, len(candidates)), self.max_profiles)
        return count

    # ── Queries / admin ──────────────────────────────────────────────────

    def get_profile(self, client_id: str) -> dict[str, Any] | None:
        with self._lock:
            profile = self._profiles.get(client_id)
            return copy.deepcopy(profile.to_dict()) if profile is not None else None

    def set_customer_info(self, client_id: str, info: dict[str, Any]) -> dict[str, Any]:
        """Merge ``info`` (e.g. ``{"name": ...}``) into the client's profile."""
        with self._lock:
            profile = self._get_or_create(client_id)
            profile.info = {**profile.info, **info, "last_updated": time.time()}
            self._dirty.add(client_id)
            return dict(profile.info)

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)

    # ── Persistence ──────────────────────────────────────────────────────

    def load(self) -> int:
        if self._data_service is None:
            return 0
        try:
            records = self._data_service().get_all_customers()
        except Exception:
            logger.warning("Loading customer profiles failed, starting empty", exc_info=True)
            return 0
        profiles = [CustomerProfile.from_dict(r) for r in records if r.get("client_id") or r.get("id")]
        profiles.sort(key=lambda p: p.last_activity, reverse=True)
        with self._lock:
            self._profiles = {p.client_id: p for p in profiles[: self.max_profiles]}
            loaded = len(self._profiles)
        logger.info("Loaded %d customer profiles", loaded)
        return loaded

    def save(self) -> int:
        """Write profiles changed since the last save. Returns how many were written."""
        if self._data_service is None:
            return 0
        with self._lock:
            pending = {cid: self._profiles[cid].to_dict() for cid in self._dirty if cid in self._profiles}
            self._dirty.clear()

        saved = 0
        failed: list[str] = []
        for cid, record in pending.items():
            try:
                service = self._data_service()
                if service.update_customer(cid, record) is None:
                    service.create_customer(record)
                saved += 1
            except Exception:
                logger.warning("Saving profile %s failed", client_tag(cid), exc_info=True)
                failed.append(cid)

        if failed:
            with self._lock:
                self._dirty.update(cid for cid in failed if cid in self._profiles)
        if pending:
            logger.info("Customer profiles saved: %d ok, %d failed", saved, len(failed))
        return saved

    def start(self) -> None:
        if self._saver is not None:
            self._saver.start()

    def dispose(self) -> None:
        if self._saver is not None:
            self._saver.stop()
        self.save()
