"""Adaptive confirmation policy.

Decides, per command, how much ceremony the user has to go through before
the change is applied. Rules are evaluated in priority order and the first
one that matches wins, so adding a rule never silently weakens another.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections import Counter
from typing import Any

from .config import Settings
from .models import (
    MUTATING_ACTIONS,
    ConfirmationDecision,
    ConfirmationHistory,
    ConfirmationRequest,
    VoiceCorrection,
)
from .text import find_quantity, name_similarity, normalize
from .units import classify, normalize_unit

logger = logging.getLogger("stockvoice.confirmation")


def _fmt(quantity: float | None) -> str:
    if quantity is None:
        return "?"
    return f"{quantity:g}"


_MISTAKE_HINTS = {
    "item": "Please confirm the item name is correct",
    "unit": "Please confirm the unit is correct",
    "action": "Please confirm whether to add, remove or set",
}


class ConfirmationEngine:
    """Pure policy object: ``decide(request)`` never raises and has no side effects."""

    def __init__(self, settings: Settings | None = None):
        s = settings or Settings()
        self.low_confidence = s.low_confidence
        self.high_confidence = s.high_confidence
        self.large_change_ratio = s.large_change_ratio
        self.large_change_absolute = s.large_change_absolute
        self.similar_name_threshold = s.similar_name_threshold
        self.accuracy_threshold = s.accuracy_threshold
        self.min_history = s.min_confirmation_history
        self.visual_timeout = s.visual_timeout
        self.voice_timeout = s.voice_timeout
        self.read_only_roles = frozenset(r.lower() for r in s.read_only_roles)

    def decide(self, request: ConfirmationRequest) -> ConfirmationDecision:
        decision = self._decide(request)
        logger.debug(
            "decide %s %s %s -> %s/%s (%s)",
            request.action, _fmt(request.quantity), request.item,
            decision.type, decision.risk_level, decision.reason,
        )
        return decision

    def _decide(self, request: ConfirmationRequest) -> ConfirmationDecision:
        confidence = request.confidence
        if confidence is None or (isinstance(confidence, float) and math.isnan(confidence)):
            confidence = 0.0

        # 1. Recognition confidence too low to act on
        if confidence < self.low_confidence:
            return ConfirmationDecision(
                "explicit", "high", "detailed", "Low confidence in voice recognition", confidence,
            )

        if request.action not in MUTATING_ACTIONS:
            return ConfirmationDecision(
                "explicit", "high", "detailed", f"Unrecognised action {request.action!r}", confidence,
            )

        quantity = request.quantity if request.quantity is not None else 0.0
        current = request.current_quantity

        # 2. Removals always get a spoken confirmation
        if request.action == "remove":
            if (
                current is not None
                and request.threshold is not None
                and current - quantity < request.threshold
            ):
                return ConfirmationDecision(
                    "voice", "high", "detailed", "Stock would drop below threshold",
                    confidence, timeout_seconds=self.voice_timeout,
                )
            return ConfirmationDecision(
                "voice", "medium", "brief", "Removal requires confirmation",
                confidence, timeout_seconds=self.voice_timeout,
            )

        # 3. Large change relative to current stock
        if self._is_large_change(request.action, quantity, current):
            return ConfirmationDecision(
                "explicit", "high", "detailed", "Large quantity change", confidence,
            )

        # 4. Another item with a confusingly similar name
        similar = self._most_similar_name(request)
        if similar is not None:
            return ConfirmationDecision(
                "voice", "medium", "brief", "Similar items might be confused", confidence,
                timeout_seconds=self.voice_timeout,
                suggested_correction=f"Did you mean {similar}?",
            )

        # 5. User's confirmation track record
        history = request.previous_confirmations
        if (
            history is not None
            and history.total >= self.min_history
            and history.accuracy < self.accuracy_threshold
        ):
            high = history.accuracy < 0.5
            return ConfirmationDecision(
                "visual",
                "high" if high else "medium",
                "detailed" if high else "brief",
                "User has a history of confirmation errors",
                confidence,
                timeout_seconds=self.visual_timeout,
                suggested_correction=self._mistake_hint(history, request.quantity),
            )

        # 6. Role without write access
        role = (request.user_role or "").lower()
        if role in self.read_only_roles:
            return ConfirmationDecision(
                "explicit", "high", "detailed", f"Role '{role}' cannot modify inventory", confidence,
            )

        # 7. Medium confidence, unless the item was already handled this session
        if confidence < self.high_confidence:
            if self._in_session(request):
                return ConfirmationDecision(
                    "implicit", "low", "silent", "Item already confirmed this session", confidence,
                )
            return ConfirmationDecision(
                "visual", "medium", "brief", "Moderate confidence in voice recognition",
                confidence, timeout_seconds=self.visual_timeout,
            )

        # 8. Everything else
        return ConfirmationDecision("implicit", "low", "silent", "Routine update", confidence)

    def _is_large_change(self, action: str, quantity: float, current: float | None) -> bool:
        if current is None or current <= 0:
            return quantity > self.large_change_absolute
        if action == "set":
            return abs(quantity - current) / current > self.large_change_ratio
        return quantity / current > self.large_change_ratio

    def _most_similar_name(self, request: ConfirmationRequest) -> str | None:
        target = normalize(request.item)
        best_name, best_score = None, 0.0
        for name in list(request.similar_items) + list(request.session_items):
            if not name or normalize(name) == target:
                continue
            score = name_similarity(request.item, name)
            if score >= self.similar_name_threshold and score > best_score:
                best_name, best_score = name, score
        return best_name

    @staticmethod
    def _in_session(request: ConfirmationRequest) -> bool:
        target = normalize(request.item)
        return any(normalize(name) == target for name in request.session_items)

    @staticmethod
    def _mistake_hint(history: ConfirmationHistory, quantity: float | None) -> str:
        if not history.recent_mistakes:
            return "Please double-check this command"
        kind = Counter(history.recent_mistakes).most_common(1)[0][0]
        if kind == "quantity":
            return f"Did you mean a different quantity than {_fmt(quantity)}?"
        return _MISTAKE_HINTS.get(kind, "Please double-check this command")


# ---------------------------------------------------------------------------
# Spoken replies to a confirmation prompt
# ---------------------------------------------------------------------------

_AFFIRMATIONS = re.compile(
    r"^(?:yes|yeah|yep|yup|correct|right|that's right|sounds good|fine|okay|ok|sure|confirm)"
    r"(?: please)?$"
)
_NEGATIONS = re.compile(
    r"^(?:no|nope|incorrect|wrong|that's wrong|not right|cancel|cancel that|never mind)$"
)
_NOT_BUT = re.compile(r"\bnot\s+(?:the\s+)?(.+?)\s+(?:but|it's|i meant|should be)\s+(?:the\s+)?(.+)$")
_ITEM_PHRASES = (
    re.compile(r"\b(?:i meant|it's|the item is|should be)\s+(?:the\s+)?(.+)$"),
    re.compile(r"^(?:no\s+)?the\s+(.+?)\s+not\s+the\s+.+$"),
)
_ACTION_FIX = re.compile(r"\b(?:not|don't)\s+(add|remove|set)\b")
_ACTION_WORDS = re.compile(r"\b(add|remove|set)\b")


def _clean_reply(text: str) -> str:
    cleaned = re.sub(r"[.!?,;:]", " ", (text or "").lower())
    return " ".join(cleaned.split())


def process_voice_correction(original: Any, reply: str) -> VoiceCorrection | None:
    """
    Interpret the user's answer to a confirmation prompt.

    Returns the command to apply (unchanged on a plain "yes") tagged with
    what kind of mistake was corrected, or None when the reply is a refusal
    or cannot be understood.
    """
    text = _clean_reply(reply)
    if not text:
        return None

    base = {
        "action": original.action,
        "item": original.item,
        "quantity": original.quantity,
        "unit": original.unit,
    }

    if _AFFIRMATIONS.match(text):
        return VoiceCorrection(**base, mistake_type="multiple")
    if _NEGATIONS.match(text):
        return None

    not_but = _NOT_BUT.search(text)
    replacement = not_but.group(2).strip() if not_but else text

    # Quantity: "no, 10" / "I meant twelve" / "not 5 but 15"
    quantity = find_quantity(replacement)
    if quantity is not None:
        return VoiceCorrection(**{**base, "quantity": quantity}, mistake_type="quantity")

    # Action: "not add, remove"
    action_fix = _ACTION_FIX.search(text)
    if action_fix:
        rejected = action_fix.group(1)
        others = [a for a in _ACTION_WORDS.findall(text) if a != rejected]
        if others and others[0] != original.action:
            return VoiceCorrection(**{**base, "action": others[0]}, mistake_type="action")

    # Unit: "not pounds but bags"
    unit_words = [w for w in replacement.split() if classify(w) != "unknown"]
    if unit_words and len(replacement.split()) <= 2:
        unit = normalize_unit(unit_words[0])
        if unit != normalize_unit(original.unit):
            return VoiceCorrection(**{**base, "unit": unit}, mistake_type="unit")

    # Item: "not coffee but tea" / "I meant oat milk" / "the tea not the coffee"
    if not_but:
        item = replacement
    else:
        item = None
        for pattern in _ITEM_PHRASES:
            match = pattern.search(text)
            if match:
                item = match.group(1).strip()
                break
    if item and len(item) > 1 and normalize(item) != normalize(original.item):
        return VoiceCorrection(**{**base, "item": item}, mistake_type="item")

    return None


class ConfirmationTracker:
    """Per-user confirmation statistics, persisted in the store."""

    def __init__(self, store: Any):
        self.store = store
        self._lock = threading.Lock()

    def history(self, user_id: str) -> ConfirmationHistory:
        return self.store.get_confirmation_stats(user_id)

    def record(self, user_id: str, was_correct: bool, mistake_type: str | None = None) -> ConfirmationHistory:
        with self._lock:
            stats = self.store.get_confirmation_stats(user_id)
            stats.total += 1
            if was_correct:
                stats.correct += 1
            elif mistake_type:
                stats.recent_mistakes.append(mistake_type)
            self.store.save_confirmation_stats(user_id, stats)
        logger.info(
            "confirmation for %s recorded as %s (accuracy %.2f over %d)",
            user_id, "correct" if was_correct else f"wrong ({mistake_type})",
            stats.accuracy, stats.total,
        )
        return stats
