"""Tests for the auto-reply strategy."""

from __future__ import annotations

import pytest
from freezegun import freeze_time

from shopdesk.storage.base import AUTO_REPLY_CATEGORY
from shopdesk.strategies.auto_reply import (
    DEFAULT_REPLIES,
    DEFAULT_REPLY_CONFIDENCE,
    AutoReplyStrategy,
    IntentRules,
    InvalidRuleError,
    render_template,
    time_greeting,
)

PRICE_REPLY = "您好，该商品的具体价格请查看商品详情页面，如需了解更多优惠信息可以告诉我。"


@pytest.fixture()
def strategy(mock_service):
    return AutoReplyStrategy(lambda: mock_service)


# ── Template substitution ─────────────────────────────────────────────────


class TestTemplates:
    @pytest.mark.parametrize(
        "hour,expected",
        [(0, "上午好"), (11, "上午好"), (12, "下午好"), (17, "下午好"), (18, "晚上好"), (23, "晚上好")],
    )
    def test_time_greeting(self, hour, expected):
        assert time_greeting(hour) == expected

    def test_customer_name_falls_back_to_generic_address(self, session):
        assert render_template("{customerName}您好", session) == "亲您好"

    def test_customer_name_and_count(self, session):
        session.customer_info["name"] = "王先生"
        session.message_count = 3
        assert render_template("{customerName}，第{messageCount}条", session) == "王先生，第3条"

    @freeze_time("2026-03-01 20:15:00")
    def test_time_greeting_placeholder(self, session):
        assert render_template("{timeGreeting}！", session) == "晚上好！"


# ── Rule loading ──────────────────────────────────────────────────────────


class TestRuleLoading:
    def test_builtins_seeded_and_persisted(self, strategy, mock_service):
        names = {r["name"] for r in strategy.rules()}
        assert names == {"greeting", "farewell", "price_inquiry"}
        stored = mock_service.get_all_intent_templates(AUTO_REPLY_CATEGORY)
        assert {t["name"] for t in stored} == names

    def test_stored_rules_replace_builtins(self, mock_service):
        mock_service.create_intent_template({
            "name": "shipping",
            "category": AUTO_REPLY_CATEGORY,
            "rules": [{"pattern": "发货", "reply": "48小时内发货"}],
        })
        strategy = AutoReplyStrategy(lambda: mock_service)
        assert [r["name"] for r in strategy.rules()] == ["shipping"]

    def test_malformed_stored_pattern_is_skipped(self, mock_service, session, make_message):
        mock_service.create_intent_template({
            "name": "shipping",
            "category": AUTO_REPLY_CATEGORY,
            "rules": [
                {"pattern": "([unclosed", "reply": "never"},
                {"pattern": "发货", "reply": "48小时内发货"},
            ],
        })
        strategy = AutoReplyStrategy(lambda: mock_service)
        result = strategy.process(make_message(content="什么时候发货", intents=[("shipping", 0.9)]), session)
        assert result.message == "48小时内发货"

    def test_storage_failure_uses_builtins(self):
        def down():
            raise ConnectionError("db down")

        strategy = AutoReplyStrategy(down)
        assert len(strategy.rules()) == 3

    def test_without_storage(self):
        strategy = AutoReplyStrategy(load=False)
        assert len(strategy.rules()) == 3

    def test_template_accepts_camel_case_default(self):
        rules = IntentRules.from_template({"intent": "x", "rules": [], "defaultReply": "兜底"})
        assert rules.intent == "x"
        assert rules.default_reply == "兜底"


# ── Processing ────────────────────────────────────────────────────────────


class TestProcess:
    def test_matching_rule_in_suggest_mode(self, strategy, session, make_message):
        result = strategy.process(make_message(content="这个多少钱", intents=[("price_inquiry", 0.9)]), session)
        assert result.message == PRICE_REPLY
        assert result.intent == "price_inquiry"
        assert result.confidence == 0.9
        assert result.mode == "suggest"
        assert result.should_auto_send is False

    def test_auto_mode_auto_sends(self, strategy, session, make_message):
        strategy.set_reply_mode("auto")
        result = strategy.process(make_message(content="这个多少钱", intents=[("price_inquiry", 0.9)]), session)
        assert result.should_auto_send is True
        assert result.to_dict()["shouldAutoSend"] is True

    def test_hybrid_mode_never_auto_sends(self, strategy, session, make_message):
        strategy.set_reply_mode("hybrid")
        result = strategy.process(make_message(content="这个多少钱", intents=[("price_inquiry", 0.95)]), session)
        assert result.should_auto_send is False

    def test_first_matching_rule_wins(self, strategy, session, make_message):
        result = strategy.process(make_message(content="多少钱，有优惠吗", intents=[("price_inquiry", 0.9)]), session)
        assert result.message == PRICE_REPLY

    def test_match_is_case_insensitive(self, strategy, session, make_message):
        strategy.add_rule("shipping", "sf express", "默认顺丰发货")
        result = strategy.process(make_message(content="Ship by SF Express?", intents=[("shipping", 0.8)]), session)
        assert result.message == "默认顺丰发货"

    def test_no_intents_gives_default_reply(self, strategy, session, make_message):
        result = strategy.process(make_message(content="嗯"), session)
        assert result.intent == "default"
        assert result.confidence == DEFAULT_REPLY_CONFIDENCE
        assert result.message in DEFAULT_REPLIES
        assert result.should_auto_send is False

    def test_low_confidence_gives_default_reply(self, strategy, session, make_message):
        strategy.set_reply_mode("auto")
        result = strategy.process(make_message(content="这个多少钱", intents=[("price_inquiry", 0.5)]), session)
        assert result.is_default
        assert result.should_auto_send is False

    def test_unknown_intent_gives_default_reply(self, strategy, session, make_message):
        result = strategy.process(make_message(content="退货", intents=[("refund", 0.9)]), session)
        assert result.is_default

    def test_alternatives_ranked_by_confidence(self, strategy, session, make_message):
        message = make_message(
            content="你好，这个多少钱",
            intents=[("greeting", 0.7), ("price_inquiry", 0.9)],
        )
        result = strategy.process(message, session)
        assert result.intent == "price_inquiry"
        assert [a.intent for a in result.alternatives] == ["greeting"]
        assert result.to_dict()["alternatives"][0]["isAutomatic"] is True

    def test_max_replies_per_intent(self, mock_service, session, make_message):
        strategy = AutoReplyStrategy(lambda: mock_service, max_replies_per_intent=1)
        message = make_message(content="你好，这个多少钱", intents=[("price_inquiry", 0.9), ("greeting", 0.8)])
        assert strategy.process(message, session).alternatives == []

    def test_rule_set_default_reply(self, strategy, session, make_message):
        strategy.add_rule("shipping", "顺丰", "默认顺丰发货")
        strategy._rules["shipping"].default_reply = "{customerName}，发货问题请稍等"
        result = strategy.process(make_message(content="什么快递", intents=[("shipping", 0.9)]), session)
        assert result.message == "亲，发货问题请稍等"

    def test_reply_uses_customer_name(self, strategy, session, make_message):
        strategy.add_rule("vip", ".*", "{customerName}，欢迎回来")
        session.customer_info["name"] = "小李"
        result = strategy.process(make_message(content="在吗", intents=[("vip", 0.9)]), session)
        assert result.message == "小李，欢迎回来"

    def test_to_dict_wire_keys(self, strategy, session, make_message):
        d = strategy.process(make_message(content="你好", intents=[("greeting", 0.99)]), session).to_dict()
        assert set(d) == {"success", "mode", "message", "confidence", "intent", "alternatives", "shouldAutoSend", "timestamp"}


# ── Rule management ───────────────────────────────────────────────────────


class TestAddRule:
    def test_add_rule_persists(self, strategy, mock_service):
        assert strategy.add_rule("shipping", "发货", "48小时内发货") is True
        stored = mock_service.get_intent_template("shipping")
        assert stored["category"] == AUTO_REPLY_CATEGORY
        assert stored["rules"] == [{"pattern": "发货", "reply": "48小时内发货"}]

    def test_add_rule_appends_to_existing_intent(self, strategy, mock_service):
        strategy.add_rule("price_inquiry", "贵", "我们支持价保")
        stored = mock_service.get_intent_template("price_inquiry")
        assert len(stored["rules"]) == 3
        assert stored["rules"][-1]["pattern"] == "贵"

    def test_invalid_pattern_rejected(self, strategy):
        with pytest.raises(InvalidRuleError):
            strategy.add_rule("shipping", "([unclosed", "x")
        assert "shipping" not in {r["name"] for r in strategy.rules()}

    def test_empty_intent_rejected(self, strategy):
        with pytest.raises(InvalidRuleError):
            strategy.add_rule("", "x", "y")

    def test_persist_failure_keeps_rule_in_memory(self, mock_service, session, make_message):
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] > 2:
                raise ConnectionError("db down")
            return mock_service

        strategy = AutoReplyStrategy(flaky)
        assert strategy.add_rule("shipping", "发货", "48小时内发货") is False
        result = strategy.process(make_message(content="发货了吗", intents=[("shipping", 0.9)]), session)
        assert result.message == "48小时内发货"


class TestReplyMode:
    def test_invalid_mode_rejected(self, strategy):
        with pytest.raises(ValueError):
            strategy.set_reply_mode("yolo")
        assert strategy.reply_mode == "suggest"

    def test_invalid_initial_mode_rejected(self):
        with pytest.raises(ValueError):
            AutoReplyStrategy(reply_mode="yolo", load=False)
