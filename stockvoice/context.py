"""Per-session conversation state and the registry that owns it."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import tiktoken

from .models import RecentCommand

logger = logging.getLogger("stockvoice.context")


class SessionContext:
    """
    Conversation history and recent commands for one voice/text session.

    History is append-only and bounded twice: by message count (default 8,
    i.e. four exchanges) and by a token budget, dropping the oldest messages
    first. Recent commands are kept newest first.
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        role: str = "staff",
        history_limit: int = 8,
        token_budget: int = 1024,
        recent_limit: int = 5,
        store: Any = None,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.role = role
        self.history_limit = history_limit
        self.token_budget = token_budget
        self.recent_limit = recent_limit
        self.store = store

        self.history: list[dict[str, str]] = []
        self.recent_commands: list[RecentCommand] = []
        self.session_items: list[str] = []
        self.last_active: float = time.time()
        self._history_tokens: int = 0
        self._encoder = None

        if store is not None:
            self.recent_commands = store.get_recent_commands(session_id, limit=recent_limit)

    @property
    def encoder(self):
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding("cl100k_base")
        return self._encoder

    def count_tokens(self, text: str) -> int:
        """Count tokens in a string."""
        return len(self.encoder.encode(text))

    def history_tokens(self) -> int:
        return self._history_tokens

    def touch(self):
        self.last_active = time.time()

    # -- conversation history --

    def add_user_message(self, content: str):
        self._append("user", content)

    def add_assistant_message(self, content: str):
        self._append("assistant", content)

    def _append(self, role: str, content: str):
        self.history.append({"role": role, "content": content})
        self._history_tokens += self.count_tokens(content) + 4  # role overhead
        self._trim_history()
        self.touch()

    def _trim_history(self):
        while len(self.history) > self.history_limit:
            self._drop_oldest()
        # Always keep the latest message even if it alone exceeds the budget
        while len(self.history) > 1 and self._history_tokens > self.token_budget:
            self._drop_oldest()

    def _drop_oldest(self):
        dropped = self.history.pop(0)
        self._history_tokens -= self.count_tokens(dropped["content"]) + 4

    def get_conversation_history(self) -> list[dict[str, str]]:
        return [dict(m) for m in self.history]

    # -- recent commands --

    def add_recent_command(self, command: RecentCommand):
        self.recent_commands.insert(0, command)
        del self.recent_commands[self.recent_limit:]
        if self.store is not None:
            self.store.add_recent_command(self.session_id, command, keep=self.recent_limit)
        self.note_item(command.item)
        self.touch()

    def get_recent_commands(self) -> list[RecentCommand]:
        """Newest first."""
        return list(self.recent_commands)

    # -- items touched this session --

    def note_item(self, name: str):
        if name and name.lower() not in (n.lower() for n in self.session_items):
            self.session_items.append(name)

    def clear(self):
        self.history.clear()
        self.recent_commands.clear()
        self.session_items.clear()
        self._history_tokens = 0
        if self.store is not None:
            self.store.clear_recent_commands(self.session_id)


class SessionRegistry:
    """Session contexts keyed by session id, created and evicted explicitly."""

    def __init__(
        self,
        store: Any = None,
        history_limit: int = 8,
        token_budget: int = 1024,
        recent_limit: int = 5,
    ):
        self.store = store
        self.history_limit = history_limit
        self.token_budget = token_budget
        self.recent_limit = recent_limit
        self._sessions: dict[str, SessionContext] = {}
        self._lock = threading.Lock()

    def create(self, session_id: str, user_id: str, role: str = "staff") -> SessionContext:
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id!r} already exists")
            ctx = SessionContext(
                session_id,
                user_id,
                role=role,
                history_limit=self.history_limit,
                token_budget=self.token_budget,
                recent_limit=self.recent_limit,
                store=self.store,
            )
            self._sessions[session_id] = ctx
        logger.info("session %s started for user %s (%s)", session_id, user_id, role)
        return ctx

    def get(self, session_id: str) -> SessionContext | None:
        with self._lock:
            return self._sessions.get(session_id)

    def end(self, session_id: str) -> bool:
        with self._lock:
            ctx = self._sessions.pop(session_id, None)
        if ctx is None:
            return False
        ctx.clear()
        logger.info("session %s ended", session_id)
        return True

    def idle_sessions(self, max_idle_seconds: float, now: float | None = None) -> list[str]:
        now = now if now is not None else time.time()
        with self._lock:
            return [
                sid for sid, ctx in self._sessions.items()
                if now - ctx.last_active > max_idle_seconds
            ]

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
