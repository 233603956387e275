"""Per-session wiring of the voice command pipeline."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from . import feedback, units
from .buffer import TranscriptionBuffer
from .confirmation import ConfirmationEngine, ConfirmationTracker, process_voice_correction
from .config import Settings
from .context import SessionContext, SessionRegistry
from .coordinator import MutationCoordinator
from .errors import Ambiguous, Cancelled, NotFound, StockVoiceError, ValidationError
from .models import (
    Actor,
    CatalogItem,
    ConfirmationDecision,
    ConfirmationRequest,
    MutationResult,
    RecentCommand,
    StructuredCommand,
)
from .resolver import ItemResolver

logger = logging.getLogger("stockvoice.pipeline")

OUTCOME_STATUSES = (
    "applied", "undone", "pending", "cancelled",
    "not_found", "ambiguous", "invalid", "failed", "ignored",
)


@dataclass
class CommandOutcome:
    """What happened to one command (or one reply)."""
    status: str             # one of OUTCOME_STATUSES
    message: str
    command: StructuredCommand | None = None
    decision: ConfirmationDecision | None = None
    result: MutationResult | None = None
    pending_id: str | None = None
    suggestions: list[str] = field(default_factory=list)


@dataclass
class PendingConfirmation:
    """A resolved command waiting for the user's answer. Never applied once expired."""
    id: str
    command: StructuredCommand
    item: CatalogItem
    decision: ConfirmationDecision
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def _status_for(error: Exception) -> str:
    if isinstance(error, Ambiguous):
        return "ambiguous"
    if isinstance(error, NotFound):
        return "not_found"
    if isinstance(error, ValidationError):
        return "invalid"
    if isinstance(error, Cancelled):
        return "cancelled"
    return "failed"


class VoiceSession:
    """
    One speaker's session: a transcription buffer, an interpreter, the
    conversation context and the commands waiting for confirmation.
    """

    def __init__(
        self,
        pipeline: "VoicePipeline",
        context: SessionContext,
        interpreter: Any,
    ):
        self.pipeline = pipeline
        self.context = context
        self.interpreter = interpreter
        self.actor = Actor(user_id=context.user_id, role=context.role)
        self.pending: list[PendingConfirmation] = []
        self._listeners: list[Callable[[CommandOutcome], None]] = []
        self._lock = threading.RLock()
        self._closed = False

        self.buffer = TranscriptionBuffer(
            interpreter,
            context=context,
            silence_timeout=pipeline.settings.silence_timeout,
        )
        self.buffer.on("complete_command", self._on_complete_command)
        self.buffer.on("no_command", self._on_no_command)
        self.buffer.on("error", self._on_error)

    @property
    def session_id(self) -> str:
        return self.context.session_id

    # -- input --

    def add_fragment(self, text: str):
        self.context.touch()
        self.buffer.add_fragment(text)

    def flush(self):
        self.buffer.flush()

    def on_outcome(self, callback: Callable[[CommandOutcome], None]):
        self._listeners.append(callback)

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self.pending)

    # -- buffer events --

    def _on_complete_command(self, results: list[StructuredCommand], raw_text: str):
        if self._closed:
            return
        self.context.add_user_message(raw_text)
        for command in results:
            if not command.is_complete:
                logger.debug("skipping incomplete command %s", command.to_dict())
                continue
            self.handle_command(command)

    def _on_no_command(self, raw_text: str):
        self.context.add_user_message(raw_text)
        self._finish(CommandOutcome("ignored", "I didn't catch an inventory command"))

    def _on_error(self, error: Exception, raw_text: str):
        logger.warning("session %s: could not interpret %r: %s", self.session_id, raw_text, error)
        self._finish(CommandOutcome("failed", feedback.error_message(error).text))

    # -- commands --

    def handle_command(self, command: StructuredCommand) -> CommandOutcome:
        """Resolve, decide and apply (or park) one complete command."""
        with self._lock:
            if self._closed:
                logger.debug("session %s closed, dropping %s", self.session_id, command.to_dict())
                return CommandOutcome("cancelled", "Session closed", command=command)

            if command.action == "undo":
                return self._undo_last(command)

            prepared = self._prepare(command)
            if isinstance(prepared, CommandOutcome):
                return prepared
            resolved, item, decision = prepared

            # ── STEP 4: Apply now or wait for the user ──
            if decision.auto_approved:
                return self._apply(resolved, item, decision)
            return self._park(resolved, item, decision)

    def respond(self, reply: str) -> CommandOutcome:
        """Answer the oldest pending confirmation."""
        with self._lock:
            self.context.touch()
            if not self.pending:
                return self._finish(CommandOutcome("invalid", "There is nothing to confirm"))

            pending = self.pending.pop(0)
            self.context.add_user_message(reply)

            if pending.is_expired(self.pipeline.clock()):
                logger.info("pending %s expired before the reply", pending.id)
                return self._finish(CommandOutcome(
                    "cancelled", "That confirmation timed out; nothing was changed",
                    command=pending.command, decision=pending.decision, pending_id=pending.id,
                ))

            correction = process_voice_correction(pending.command, reply)
            if correction is None:
                return self._finish(CommandOutcome(
                    "cancelled", "Cancelled; nothing was changed",
                    command=pending.command, decision=pending.decision, pending_id=pending.id,
                ))

            tracker = self.pipeline.tracker
            if correction.mistake_type == "multiple":
                tracker.record(self.actor.user_id, True)
                return self._apply(pending.command, pending.item, pending.decision)

            tracker.record(self.actor.user_id, False, correction.mistake_type)
            corrected = StructuredCommand(
                action=correction.action,
                item=correction.item,
                quantity=correction.quantity,
                unit=correction.unit,
                confidence=1.0,
                is_complete=True,
            )

            # A corrected command goes through the policy again; a different
            # item has to be resolved again.
            item = None if correction.mistake_type == "item" else pending.item
            prepared = self._prepare(corrected, item)
            if isinstance(prepared, CommandOutcome):
                return prepared
            resolved, item, decision = prepared
            if decision.risk_level == "high":
                return self._park(resolved, item, decision)
            return self._apply(resolved, item, decision)

    def expire_pending(self) -> list[CommandOutcome]:
        """Discard pending confirmations whose timeout has passed."""
        now = self.pipeline.clock()
        with self._lock:
            expired = [p for p in self.pending if p.is_expired(now)]
            self.pending = [p for p in self.pending if not p.is_expired(now)]
        return [
            self._finish(CommandOutcome(
                "cancelled", f"Confirmation for {p.command.item} timed out; nothing was changed",
                command=p.command, decision=p.decision, pending_id=p.id,
            ))
            for p in expired
        ]

    def close(self):
        with self._lock:
            self._closed = True
            self.pending.clear()
        # Outside the session lock: an interpretation in flight may be
        # delivering to handle_command, which needs it.
        self.buffer.close()
        reset = getattr(self.interpreter, "reset", None)
        if callable(reset):
            reset()

    @property
    def closed(self) -> bool:
        return self._closed

    # -- internals --

    def _prepare(
        self,
        command: StructuredCommand,
        item: CatalogItem | None = None,
    ) -> tuple[StructuredCommand, CatalogItem, ConfirmationDecision] | CommandOutcome:
        """Resolve the item and decide the ceremony. Returns a failure outcome on error."""
        # ── STEP 1: Resolve the item ──
        candidates = []
        if item is None:
            try:
                item, candidates = self.pipeline.resolver.resolve_with_candidates(command.item)
            except NotFound as e:
                suggestions = self.pipeline.resolver.suggest(command.item)
                return self._fail(e, command, suggestions)
            except Ambiguous as e:
                return self._fail(e, command, e.candidates)
        else:
            item = self.pipeline.store.find_by_id(item.id) or item

        # ── STEP 2: Express stock in the command's unit ──
        unit = command.unit or item.unit
        try:
            current = self._in_unit(item.quantity, item.unit, unit)
            threshold = (
                self._in_unit(item.threshold, item.unit, unit)
                if item.threshold is not None else None
            )
        except ValidationError as e:
            return self._fail(e, command)

        # ── STEP 3: Decide the confirmation ceremony ──
        request = ConfirmationRequest(
            confidence=command.confidence,
            action=command.action,
            item=item.name,
            quantity=command.quantity,
            unit=unit,
            current_quantity=current,
            threshold=threshold,
            similar_items=[c.item.name for c in candidates if c.item.id != item.id],
            session_items=list(self.context.session_items),
            user_role=self.context.role,
            previous_confirmations=self.pipeline.tracker.history(self.actor.user_id),
        )
        decision = self.pipeline.engine.decide(request)
        resolved = StructuredCommand(
            action=command.action,
            item=item.name,
            quantity=command.quantity,
            unit=command.unit,
            confidence=command.confidence,
            is_complete=True,
        )
        return resolved, item, decision

    @staticmethod
    def _in_unit(quantity: float, from_unit: str, to_unit: str) -> float:
        if units.normalize_unit(from_unit) == units.normalize_unit(to_unit):
            return quantity
        return units.convert(quantity, from_unit, to_unit)

    def _undo_last(self, command: StructuredCommand) -> CommandOutcome:
        try:
            result = self.pipeline.coordinator.undo_last(self.actor)
        except StockVoiceError as e:
            return self._fail(e, command)
        return self._finish(CommandOutcome(
            "undone", feedback.undo_message(result).text, command=command, result=result,
        ))

    def _apply(
        self,
        command: StructuredCommand,
        item: CatalogItem | None,
        decision: ConfirmationDecision | None,
    ) -> CommandOutcome:
        coordinator = self.pipeline.coordinator
        try:
            if item is None:
                result = coordinator.apply(command, self.actor, method="voice")
            else:
                result = coordinator.apply_to_item(item, command, self.actor, method="voice")
        except StockVoiceError as e:
            return self._fail(e, command)

        self.context.add_recent_command(RecentCommand(
            action=command.action,
            item=result.item.name,
            quantity=command.quantity,
            unit=command.unit or result.item.unit,
        ))
        return self._finish(CommandOutcome(
            "applied", feedback.success_message(result).text,
            command=command, decision=decision, result=result,
        ))

    def _park(
        self,
        command: StructuredCommand,
        item: CatalogItem,
        decision: ConfirmationDecision,
    ) -> CommandOutcome:
        now = self.pipeline.clock()
        timeout = decision.timeout_seconds or self.pipeline.settings.pending_ttl
        pending = PendingConfirmation(
            id=f"pend_{uuid.uuid4().hex[:10]}",
            command=command,
            item=item,
            decision=decision,
            created_at=now,
            expires_at=now + timeout,
        )
        self.pending.append(pending)
        logger.info(
            "session %s: %s %s waiting for %s confirmation (%s)",
            self.session_id, command.action, item.name, decision.type, decision.reason,
        )

        prompt = feedback.confirmation_prompt(
            command.action, command.quantity, command.unit or item.unit, item.name, decision,
        )
        message = prompt.text if prompt else "Please confirm"
        return self._finish(CommandOutcome(
            "pending", message, command=command, decision=decision, pending_id=pending.id,
        ))

    def _fail(
        self,
        error: Exception,
        command: StructuredCommand | None = None,
        suggestions: list[str] | None = None,
    ) -> CommandOutcome:
        logger.info("session %s: %s", self.session_id, error)
        message = feedback.error_message(error).text
        if suggestions and not isinstance(error, Ambiguous):
            message = f"{message}. Did you mean: {', '.join(suggestions)}?"
        return self._finish(CommandOutcome(
            _status_for(error), message, command=command, suggestions=list(suggestions or []),
        ))

    def _finish(self, outcome: CommandOutcome) -> CommandOutcome:
        self.context.add_assistant_message(outcome.message)
        for callback in list(self._listeners):
            try:
                callback(outcome)
            except Exception:
                logger.exception("outcome listener failed")
        return outcome


class VoicePipeline:
    """
    Owns the shared components (resolver, confirmation policy, coordinator)
    and the sessions that use them.
    """

    def __init__(
        self,
        store: Any,
        interpreter_factory: Callable[[], Any],
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.interpreter_factory = interpreter_factory
        self.settings = settings or Settings()
        self.clock = clock

        s = self.settings
        self.registry = SessionRegistry(
            store,
            history_limit=s.history_limit,
            token_budget=s.history_token_budget,
            recent_limit=s.recent_command_limit,
        )
        self.resolver = ItemResolver(
            store,
            top_k=s.resolver_top_k,
            embedding_weight=s.embedding_weight,
            token_weight=s.token_weight,
            match_threshold=s.match_threshold,
        )
        self.engine = ConfirmationEngine(s)
        self.tracker = ConfirmationTracker(store)
        self.coordinator = MutationCoordinator(
            store, self.resolver, undo_expiration_hours=s.undo_expiration_hours, clock=clock,
        )
        self._sessions: dict[str, VoiceSession] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "VoicePipeline":
        """Build the production stack: SQLite store, sentence-transformers, LLM client."""
        from .interpreter import CommandInterpreter
        from .llm import build_client
        from .store import InventoryStore

        store = InventoryStore(settings.db_path, embedding_model=settings.embedding_model)
        client = build_client(settings.provider, settings.api_key, settings.base_url)

        def factory() -> CommandInterpreter:
            return CommandInterpreter(
                client,
                model=settings.model,
                provider=settings.provider,
                accumulator_window=settings.accumulator_window,
            )

        return cls(store, factory, settings)

    def open_session(self, session_id: str, user_id: str, role: str = "staff") -> VoiceSession:
        context = self.registry.create(session_id, user_id, role=role)
        session = VoiceSession(self, context, self.interpreter_factory())
        with self._lock:
            self._sessions[session_id] = session
        return session

    def get_session(self, session_id: str) -> VoiceSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def close_session(self, session_id: str) -> bool:
        """Cancel timers, drop buffered text and pending confirmations, forget the context."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        self.registry.end(session_id)
        return True

    def evict_idle(self, max_idle_seconds: float) -> list[str]:
        idle = self.registry.idle_sessions(max_idle_seconds)
        for session_id in idle:
            logger.info("evicting idle session %s", session_id)
            self.close_session(session_id)
        return idle

    def expire_pending(self) -> list[CommandOutcome]:
        with self._lock:
            sessions = list(self._sessions.values())
        outcomes: list[CommandOutcome] = []
        for session in sessions:
            outcomes.extend(session.expire_pending())
        return outcomes

    def sweep(self) -> list[CommandOutcome]:
        """Periodic upkeep: time out pending confirmations and delete expired undo records."""
        outcomes = self.expire_pending()
        self.coordinator.sweep_expired()
        return outcomes

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
