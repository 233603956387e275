"""Tests for session context and the session registry."""

import time

import pytest

from stockvoice.context import SessionContext, SessionRegistry
from stockvoice.models import RecentCommand


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ctx():
    return SessionContext("s1", "u1")


def _recent(item: str, quantity: float = 1.0) -> RecentCommand:
    return RecentCommand(action="add", item=item, quantity=quantity, unit="pounds")


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

class TestHistory:
    def test_messages_in_order(self, ctx):
        ctx.add_user_message("add 5 pounds of coffee")
        ctx.add_assistant_message("Added 5 pounds of Coffee Beans")
        assert ctx.get_conversation_history() == [
            {"role": "user", "content": "add 5 pounds of coffee"},
            {"role": "assistant", "content": "Added 5 pounds of Coffee Beans"},
        ]

    def test_bounded_to_history_limit(self, ctx):
        for i in range(12):
            ctx.add_user_message(f"message {i}")
        history = ctx.get_conversation_history()
        assert len(history) == 8
        assert history[0]["content"] == "message 4"
        assert history[-1]["content"] == "message 11"

    def test_token_budget_drops_oldest(self):
        ctx = SessionContext("s1", "u1", token_budget=40)
        sentence = "add five pounds of the dark roast coffee beans to the inventory please"
        for _ in range(4):
            ctx.add_user_message(sentence)
        assert ctx.history_tokens() <= 40
        assert 1 <= len(ctx.get_conversation_history()) < 4

    def test_latest_message_kept_even_over_budget(self):
        ctx = SessionContext("s1", "u1", token_budget=5)
        ctx.add_user_message("this message is far longer than five tokens of budget")
        assert len(ctx.get_conversation_history()) == 1

    def test_history_copy_is_detached(self, ctx):
        ctx.add_user_message("hello")
        ctx.get_conversation_history()[0]["content"] = "changed"
        assert ctx.get_conversation_history()[0]["content"] == "hello"

    def test_count_tokens(self, ctx):
        assert ctx.count_tokens("") == 0
        assert ctx.count_tokens("add five pounds") > 0


# ---------------------------------------------------------------------------
# Recent commands
# ---------------------------------------------------------------------------

class TestRecentCommands:
    def test_newest_first_and_bounded(self, ctx):
        for i in range(7):
            ctx.add_recent_command(_recent(f"item {i}"))
        recent = ctx.get_recent_commands()
        assert len(recent) == 5
        assert recent[0].item == "item 6"

    def test_items_noted_once(self, ctx):
        ctx.add_recent_command(_recent("Sugar"))
        ctx.add_recent_command(_recent("sugar"))
        assert ctx.session_items == ["Sugar"]

    def test_persisted_per_session(self, store):
        first = SessionContext("s1", "u1", store=store)
        first.add_recent_command(_recent("Sugar", 2.0))
        again = SessionContext("s1", "u1", store=store)
        other = SessionContext("s2", "u1", store=store)
        assert [c.item for c in again.get_recent_commands()] == ["Sugar"]
        assert other.get_recent_commands() == []

    def test_clear(self, store):
        ctx = SessionContext("s1", "u1", store=store)
        ctx.add_user_message("hello")
        ctx.add_recent_command(_recent("Sugar"))
        ctx.clear()
        assert ctx.get_conversation_history() == []
        assert ctx.get_recent_commands() == []
        assert ctx.session_items == []
        assert store.get_recent_commands("s1") == []


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestRegistry:
    def test_create_get_end(self):
        registry = SessionRegistry()
        ctx = registry.create("s1", "u1", role="manager")
        assert registry.get("s1") is ctx
        assert ctx.role == "manager"
        assert "s1" in registry and len(registry) == 1
        assert registry.end("s1") is True
        assert registry.get("s1") is None
        assert registry.end("s1") is False

    def test_duplicate_session_rejected(self):
        registry = SessionRegistry()
        registry.create("s1", "u1")
        with pytest.raises(ValueError):
            registry.create("s1", "u2")

    def test_sessions_are_independent(self):
        registry = SessionRegistry()
        a = registry.create("a", "u1")
        b = registry.create("b", "u2")
        a.add_user_message("add sugar")
        assert b.get_conversation_history() == []

    def test_idle_sessions(self):
        registry = SessionRegistry()
        stale = registry.create("stale", "u1")
        registry.create("fresh", "u2")
        stale.last_active = time.time() - 600
        assert registry.idle_sessions(300) == ["stale"]
