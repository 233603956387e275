"""Incremental aggregation of transcription fragments.

Speech-to-text delivers text in pieces. The buffer joins them and decides
when there is enough to interpret: right away when the text already reads
like a finished command, otherwise after a stretch of silence.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import defaultdict
from typing import Any, Callable

from .text import NUMBER_WORDS

logger = logging.getLogger("stockvoice.buffer")

EVENTS = ("complete_command", "error", "no_command")

_NUM = r"(?:\d+(?:\.\d+)?|(?:" + "|".join(sorted(NUMBER_WORDS)) + r")(?:[\s-](?:" + \
    "|".join(sorted(NUMBER_WORDS)) + r"))*)"

_FINAL_PUNCTUATION = re.compile(r"[.!?]\s*$")
_UNDO = re.compile(r"^(?:undo(?: that| last)?|revert(?: that| last)?|take that back)$")
_ADD_REMOVE = re.compile(rf"^(?:please\s+)?(?:add|remove)\s+{_NUM}\s+\S+\s+(?:of\s+)?(?!of\b)\S+")
_SET_TO = re.compile(rf"^(?:please\s+)?(?:set|update)\s+\S.*?\bto\s+{_NUM}\b")
_STOCK_STATEMENT = re.compile(
    rf"^(?:we have|we've got|we got|there (?:is|are))\s+{_NUM}\s+\S+\s+of\s+\S+"
)
_OPEN_SET = re.compile(r"^(?:please\s+)?(?:set|update)\b")


def looks_complete(text: str) -> bool:
    """True when *text* reads like a finished command and can be interpreted now."""
    stripped = text.strip()
    if not stripped:
        return False
    if _FINAL_PUNCTUATION.search(stripped):
        return True

    lowered = " ".join(stripped.lower().split())
    if _UNDO.match(lowered):
        return True
    if _OPEN_SET.match(lowered):
        # "set the paper cups" is waiting for its "to N"
        return bool(_SET_TO.match(lowered))
    return bool(_ADD_REMOVE.match(lowered) or _STOCK_STATEMENT.match(lowered))


class TranscriptionBuffer:
    """
    Joins fragments and hands the joined text to the interpreter.

    Events (delivered synchronously, in subscription order):

    * ``complete_command(results, raw_text)``: the top result is complete;
      the buffer has been cleared.
    * ``no_command(raw_text)``: the text contained no command at all; the
      buffer has been cleared.
    * ``error(exc, raw_text)``: interpretation failed; the buffer is kept.
    """

    SILENCE_TIMEOUT = 3.0  # seconds

    def __init__(
        self,
        interpreter: Any,
        context: Any = None,
        silence_timeout: float | None = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.interpreter = interpreter
        self.context = context
        self.silence_timeout = self.SILENCE_TIMEOUT if silence_timeout is None else silence_timeout
        self._timer_factory = timer_factory

        self._buffer = ""
        self._timer = None
        self._generation = 0
        self._closed = False
        self._lock = threading.RLock()
        self._listeners: dict[str, list[Callable]] = defaultdict(list)

    # -- subscriptions --

    def on(self, event: str, callback: Callable):
        if event not in EVENTS:
            raise ValueError(f"Unknown buffer event: {event!r}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable):
        try:
            self._listeners[event].remove(callback)
        except ValueError:
            pass

    def _emit(self, event: str, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("buffer listener for %s failed", event)

    # -- fragments --

    def add_fragment(self, text: str):
        """Append a fragment; interpret now if it looks finished, else wait for silence."""
        if not text or not text.strip():
            return

        event = None
        with self._lock:
            if self._closed:
                logger.debug("fragment ignored, buffer closed")
                return

            fragment = text.strip()
            self._buffer = f"{self._buffer} {fragment}" if self._buffer else fragment
            self._cancel_timer()
            logger.debug("buffer: %r", self._buffer)

            if looks_complete(self._buffer):
                event = self._interpret()
            else:
                self._schedule_timer()
        self._deliver(event)

    def flush(self):
        """Interpret whatever is buffered right now."""
        event = None
        with self._lock:
            self._cancel_timer()
            if self._buffer and not self._closed:
                event = self._interpret()
        self._deliver(event)

    def get_current_buffer(self) -> str:
        with self._lock:
            return self._buffer

    def clear_buffer(self):
        with self._lock:
            self._cancel_timer()
            self._buffer = ""

    def close(self):
        """
        Cancel the timer and drop buffered text. No events are emitted.

        Waits for an interpretation already in flight; its result is
        discarded.
        """
        with self._lock:
            self._cancel_timer()
            self._buffer = ""
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # -- internals --

    def _schedule_timer(self):
        generation = self._generation
        self._timer = self._timer_factory(self.silence_timeout, self._on_silence, args=(generation,))
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self):
        # Bumping the generation makes a timer that already fired a no-op
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_silence(self, generation: int):
        with self._lock:
            if generation != self._generation or self._closed or not self._buffer:
                return
            self._timer = None
            logger.debug("silence timeout, interpreting %r", self._buffer)
            event = self._interpret()
        self._deliver(event)

    def _interpret(self) -> tuple | None:
        """Run the interpreter on the buffered text. Returns the event to deliver, if any."""
        raw_text = self._buffer
        history = self.context.get_conversation_history() if self.context is not None else []
        recent = self.context.get_recent_commands() if self.context is not None else []

        try:
            results = self.interpreter.interpret(raw_text, history, recent)
        except Exception as e:
            logger.warning("interpretation of %r failed: %s", raw_text, e)
            return ("error", e, raw_text)

        if not results:
            self._buffer = ""
            logger.info("no command in %r", raw_text)
            return ("no_command", raw_text)

        if results[0].is_complete:
            self._buffer = ""
            return ("complete_command", results, raw_text)

        logger.debug("incomplete command, keeping %r", raw_text)
        return None

    def _deliver(self, event: tuple | None):
        # Listeners run without the buffer lock held
        if event is None:
            return
        if self._closed:
            logger.debug("dropping %s, buffer closed", event[0])
            return
        self._emit(*event)
