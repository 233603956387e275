"""Context-aware command interpretation.

The language model does the reading; this module packages the session
context for it, validates what comes back, and resolves the elliptical
cases deterministically:

* relative references ("add 5 more") borrow item/unit from recent commands
* slot fillers ("15 pounds") complete an unfinished command from the
  accumulator or the conversation history
* one command per clause, each with its own completeness flag
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable

from .errors import InterpretationFailure
from .llm import JSON_MODE_PROVIDERS
from .models import RecentCommand, StructuredCommand, VALID_ACTIONS
from .prompts import INTERPRETER_SYSTEM_PROMPT, INTERPRETER_USER_PROMPT
from .text import contains_relative_terms, normalize, token_similarity

logger = logging.getLogger("stockvoice.interpreter")

# "add 5 gallons of milk" in an earlier message
_HISTORY_FULL = re.compile(
    r"\b(add|remove|set)\s+(\d+(?:\.\d+)?)\s+([a-z]+)\s+of\s+([a-z0-9 ]+)"
)
# "add coffee" / "set the paper cups to" in an earlier message
_HISTORY_PARTIAL = re.compile(
    r"^(add|remove|set|update)\s+(?:(?:the|some)\s+)?([a-z][a-z0-9 ]*?)(?:\s+to)?$"
)


def is_command_complete(cmd: StructuredCommand) -> bool:
    """undo always; set needs item, quantity and unit; add/remove need item and quantity."""
    if cmd.action == "undo":
        return True
    if cmd.action == "set":
        return bool(cmd.item and cmd.quantity is not None and cmd.unit)
    if cmd.action in ("add", "remove"):
        return bool(cmd.item and cmd.quantity is not None)
    return False


def slot_confidence(cmd: StructuredCommand) -> float:
    """Confidence for a command from how many slots it has filled."""
    if cmd.action == "undo":
        return 0.95
    if cmd.action and cmd.item and cmd.quantity is not None:
        return 0.8
    if cmd.action and cmd.item:
        return 0.6
    if cmd.action:
        return 0.45
    return 0.3


class CommandInterpreter:
    """
    Turns an utterance plus session context into structured commands.

    One instance belongs to one session: the accumulator that stitches
    multi-turn commands together is per-instance state.
    """

    ACCUMULATOR_WINDOW = 5.0  # seconds
    # Commands completed from recent commands or history stay below the
    # routine-update confidence.
    CONTEXT_CONFIDENCE_FLOOR = 0.6
    CONTEXT_CONFIDENCE_CAP = 0.75
    ACCUMULATED_CONFIDENCE_FLOOR = 0.7

    def __init__(
        self,
        client: Any,
        model: str = "llama-3.1-8b-instant",
        provider: str = "groq",
        accumulator_window: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.model = model
        self.provider = provider
        self.accumulator_window = (
            self.ACCUMULATOR_WINDOW if accumulator_window is None else accumulator_window
        )
        self.clock = clock
        self._accumulator: StructuredCommand | None = None
        self._accumulated_at: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def interpret(
        self,
        utterance: str,
        conversation_history: list[dict[str, str]] | None = None,
        recent_commands: list[RecentCommand] | None = None,
    ) -> list[StructuredCommand]:
        """
        Parse *utterance* into commands.

        Raises
        ------
        InterpretationFailure
            The provider call failed or returned malformed data.
        """
        if not utterance or not utterance.strip():
            return []

        history = conversation_history or []
        recent = recent_commands or []

        logger.info("Interpreting %r (%d history, %d recent)", utterance, len(history), len(recent))
        parsed = self._call_provider(utterance, history, recent)

        relative = contains_relative_terms(utterance)

        output: list[StructuredCommand] = []
        for cmd in parsed:
            if not cmd.is_complete and not relative and self._continues_partial(cmd):
                # "15 pounds" right after "add coffee beans"
                merged = self._accumulate(cmd)
                if merged is not None:
                    output.append(merged)
                continue

            if not cmd.is_complete:
                cmd = self._fill_from_context(cmd, utterance, history, recent)

            if cmd.is_complete:
                if self._accumulator is not None and self._same_subject(self._accumulator, cmd):
                    self._reset_accumulator()
                output.append(cmd)
                continue

            merged = self._accumulate(cmd)
            if merged is not None:
                output.append(merged)

        if self._accumulator is not None:
            pending = self._accumulator
            output.append(StructuredCommand(
                action=pending.action,
                item=pending.item,
                quantity=pending.quantity,
                unit=pending.unit,
                confidence=slot_confidence(pending),
                is_complete=False,
            ))

        logger.info(
            "Interpreted %d command(s), %d complete",
            len(output), sum(1 for c in output if c.is_complete),
        )
        return output

    def reset(self):
        """Forget any partially assembled command."""
        self._reset_accumulator()

    # ------------------------------------------------------------------
    # Provider call + strict parsing
    # ------------------------------------------------------------------

    def _call_provider(
        self,
        utterance: str,
        history: list[dict[str, str]],
        recent: list[RecentCommand],
    ) -> list[StructuredCommand]:
        user_prompt = INTERPRETER_USER_PROMPT.format(
            transcription=utterance,
            recent_commands=json.dumps([c.to_dict() for c in recent]),
            conversation_history=json.dumps(history),
        )

        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": INTERPRETER_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.1,
            "max_tokens": 600,
        }

        if self.provider in JSON_MODE_PROVIDERS:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**kwargs)
            raw = response.choices[0].message.content
        except Exception as e:
            logger.error("Language-model call failed: %s", e)
            raise InterpretationFailure(f"Language-model call failed: {e}") from e

        logger.debug("Provider response: %s", raw)
        return self.parse_response(raw)

    def parse_response(self, raw: str | None) -> list[StructuredCommand]:
        """Parse provider JSON into commands. Anything malformed is a hard failure."""
        if raw is None or not str(raw).strip():
            raise InterpretationFailure("Empty response from language model")

        cleaned = str(raw).strip()
        cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
        cleaned = re.sub(r"\s*```$", "", cleaned)

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise InterpretationFailure(f"Response is not valid JSON: {cleaned[:200]}") from e

        # Legacy format: a bare array of commands
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict) and isinstance(data.get("commands"), list):
            items = data["commands"]
        else:
            raise InterpretationFailure("Response has no 'commands' array")

        return [self._parse_command(item) for item in items]

    def _parse_command(self, item: Any) -> StructuredCommand:
        if not isinstance(item, dict):
            raise InterpretationFailure(f"Command is not an object: {item!r}")

        action = str(item.get("action") or "").strip().lower()
        if action and action not in VALID_ACTIONS:
            raise InterpretationFailure(f"Unknown action: {action!r}")

        quantity = item.get("quantity")
        if quantity is not None:
            if isinstance(quantity, bool):
                raise InterpretationFailure(f"Invalid quantity: {quantity!r}")
            try:
                quantity = float(quantity)
            except (TypeError, ValueError) as e:
                raise InterpretationFailure(f"Invalid quantity: {quantity!r}") from e
            if quantity < 0 or quantity != quantity:
                raise InterpretationFailure(f"Invalid quantity: {quantity!r}")

        cmd = StructuredCommand(
            action=action,
            item=str(item.get("item") or "").strip(),
            quantity=quantity,
            unit=str(item.get("unit") or "").strip().lower(),
            confidence=0.0,
        )
        if action == "undo":
            cmd.item, cmd.quantity, cmd.unit = "", None, ""

        cmd.is_complete = is_command_complete(cmd)

        raw_confidence = item.get("confidence")
        try:
            confidence = float(raw_confidence) if raw_confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        if confidence is None or confidence != confidence:
            confidence = 0.95 if cmd.is_complete else slot_confidence(cmd)
        cmd.confidence = max(0.0, min(1.0, confidence))
        return cmd

    # ------------------------------------------------------------------
    # Context resolution
    # ------------------------------------------------------------------

    def _fill_from_context(
        self,
        cmd: StructuredCommand,
        utterance: str,
        history: list[dict[str, str]],
        recent: list[RecentCommand],
    ) -> StructuredCommand:
        """
        Fill missing item/unit/action from context.

        Recent commands are only consulted for relative references ("5
        more", "same again"); anything else falls back to the conversation
        history.
        """
        filled = StructuredCommand(**vars(cmd))
        relative = contains_relative_terms(utterance)

        if filled.quantity is None and not relative:
            return filled

        if recent and relative:
            source = self._match_recent(filled.item, recent)
            if source is not None:
                if not filled.item:
                    filled.item = source.item
                if not filled.unit:
                    filled.unit = source.unit
                if not filled.action:
                    filled.action = source.action
                logger.debug("Filled %r from recent command %r", filled.item, source.item)

        if (not filled.item or not filled.unit) and history:
            self._fill_from_history(filled, history)

        if is_command_complete(filled):
            filled.is_complete = True
            filled.confidence = min(
                max(filled.confidence, self.CONTEXT_CONFIDENCE_FLOOR),
                self.CONTEXT_CONFIDENCE_CAP,
            )
        return filled

    @staticmethod
    def _match_recent(item: str, recent: list[RecentCommand]) -> RecentCommand | None:
        """Most recent command for *item*; with no item, the single most recent one."""
        if not item:
            return recent[0]
        for command in recent:  # newest first
            if token_similarity(item, command.item) > 0:
                return command
        return None

    @staticmethod
    def _fill_from_history(cmd: StructuredCommand, history: list[dict[str, str]]):
        for message in reversed(history):
            content = normalize(message.get("content", ""))
            full = _HISTORY_FULL.search(content)
            if full:
                if not cmd.action:
                    cmd.action = full.group(1)
                if not cmd.unit and not cmd.item:
                    cmd.unit = full.group(3)
                if not cmd.item:
                    cmd.item = full.group(4).strip()
                return
            partial = _HISTORY_PARTIAL.match(content)
            if partial and message.get("role") == "user" and not cmd.item:
                action = partial.group(1)
                cmd.action = cmd.action or ("set" if action == "update" else action)
                cmd.item = partial.group(2).strip()
                return

    def _accumulate(self, cmd: StructuredCommand) -> StructuredCommand | None:
        """Merge an incomplete command into the accumulator; return it once complete."""
        now = self.clock()
        acc = self._accumulator
        fresh = acc is not None and now - self._accumulated_at <= self.accumulator_window

        if not fresh or (cmd.item and acc.item and token_similarity(cmd.item, acc.item) == 0):
            # Start a new accumulator
            self._accumulator = StructuredCommand(**vars(cmd))
            self._accumulated_at = now
            return None

        if cmd.item:
            merged = StructuredCommand(
                action=cmd.action or acc.action,
                item=cmd.item,
                quantity=cmd.quantity if cmd.quantity is not None else acc.quantity,
                unit=cmd.unit or acc.unit,
                confidence=0.0,
            )
        else:
            # Slot filler: keep the action and item already stated
            merged = StructuredCommand(
                action=acc.action or cmd.action,
                item=acc.item,
                quantity=cmd.quantity if cmd.quantity is not None else acc.quantity,
                unit=cmd.unit or acc.unit,
                confidence=0.0,
            )

        if is_command_complete(merged):
            merged.is_complete = True
            merged.confidence = max(
                min(acc.confidence, cmd.confidence),
                self.ACCUMULATED_CONFIDENCE_FLOOR,
            )
            self._reset_accumulator()
            logger.debug("Accumulator completed %s %s", merged.action, merged.item)
            return merged

        merged.confidence = slot_confidence(merged)
        self._accumulator = merged
        self._accumulated_at = now
        return None

    def _continues_partial(self, cmd: StructuredCommand) -> bool:
        """True when *cmd* can extend the fresh partial command held in the accumulator."""
        acc = self._accumulator
        if acc is None or self.clock() - self._accumulated_at > self.accumulator_window:
            return False
        return self._same_subject(acc, cmd) or not cmd.item

    def _reset_accumulator(self):
        self._accumulator = None
        self._accumulated_at = 0.0

    @staticmethod
    def _same_subject(acc: StructuredCommand, cmd: StructuredCommand) -> bool:
        return not acc.item or token_similarity(acc.item, cmd.item) > 0
