"""Data models for the voice inventory pipeline."""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal
import uuid
import time


# -- Constants --

ACTIONS = Literal["add", "remove", "set", "undo"]
MUTATING_ACTIONS = frozenset({"add", "remove", "set"})
VALID_ACTIONS = MUTATING_ACTIONS | {"undo"}

CONFIRMATION_TYPES = Literal["implicit", "visual", "voice", "explicit"]
RISK_LEVELS = Literal["low", "medium", "high"]
FEEDBACK_MODES = Literal["silent", "brief", "detailed"]
MISTAKE_TYPES = Literal["item", "quantity", "action", "unit", "multiple"]

UNDO_ACTION_TYPES = frozenset({"inventory_update", "item_create", "item_delete"})
UPDATE_METHODS = frozenset({"ui", "voice", "api", "undo"})

# Words that carry no meaning when matching item names
FILLER_WORDS = frozenset({
    "the", "a", "an", "of", "some", "our", "my", "please", "uh", "um",
    "like", "that", "this", "those", "these", "item", "items", "stuff",
})


# -- Data Classes --

@dataclass
class StructuredCommand:
    """One parsed inventory command."""
    action: str             # one of ACTIONS, "" when not understood yet
    item: str
    quantity: float | None
    unit: str
    confidence: float       # 0.0 to 1.0
    is_complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "item": self.item,
            "quantity": self.quantity,
            "unit": self.unit,
            "confidence": self.confidence,
            "isComplete": self.is_complete,
        }


@dataclass
class RecentCommand:
    """A command that was applied earlier in the session."""
    action: str
    item: str
    quantity: float | None
    unit: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "item": self.item,
            "quantity": self.quantity,
            "unit": self.unit,
            "timestamp": self.timestamp,
        }


@dataclass
class CatalogItem:
    """A single inventory row."""
    id: str
    name: str
    quantity: float
    unit: str
    category: str = "general"
    threshold: float | None = None
    description: str = ""
    last_updated: float = 0.0

    @staticmethod
    def generate_id() -> str:
        return f"itm_{uuid.uuid4().hex[:10]}"

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "category": self.category,
            "threshold": self.threshold,
            "description": self.description,
        }


@dataclass
class ScoredCandidate:
    """A catalog item with its resolver scores."""
    item: CatalogItem
    embedding_similarity: float
    token_similarity: float
    score: float


@dataclass
class UndoRecord:
    """A reversible snapshot of one mutation."""
    id: str
    user_id: str
    action_type: str        # one of UNDO_ACTION_TYPES
    item_id: str
    item_name: str
    description: str
    previous_state: dict[str, Any]
    current_state: dict[str, Any]
    method: str             # one of UPDATE_METHODS
    created_at: float
    expires_at: float

    @staticmethod
    def generate_id() -> str:
        return f"undo_{uuid.uuid4().hex[:10]}"

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass
class ConfirmationHistory:
    """How often a user's confirmations turned out to be right."""
    correct: int = 0
    total: int = 0
    recent_mistakes: list[str] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 1.0


@dataclass
class ConfirmationRequest:
    """Everything the confirmation policy looks at for one command."""
    confidence: float | None
    action: str
    item: str
    quantity: float | None
    unit: str = ""
    current_quantity: float | None = None
    threshold: float | None = None
    similar_items: list[str] = field(default_factory=list)
    session_items: list[str] = field(default_factory=list)
    user_role: str | None = None
    previous_confirmations: ConfirmationHistory | None = None


@dataclass
class ConfirmationDecision:
    """Which confirmation ceremony a command needs before it is applied."""
    type: str               # one of CONFIRMATION_TYPES
    risk_level: str         # one of RISK_LEVELS
    feedback_mode: str      # one of FEEDBACK_MODES
    reason: str
    confidence: float = 0.0
    timeout_seconds: float | None = None
    suggested_correction: str | None = None

    @property
    def auto_approved(self) -> bool:
        return self.type == "implicit"


@dataclass
class VoiceCorrection:
    """A command after the user answered a confirmation prompt."""
    action: str
    item: str
    quantity: float | None
    unit: str
    mistake_type: str       # one of MISTAKE_TYPES


@dataclass
class ChangeEvent:
    """Broadcast after a quantity change is persisted."""
    item_id: str
    item: str
    quantity: float
    unit: str
    action: str
    actor: str
    method: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class MutationResult:
    """Outcome of one applied mutation."""
    item: CatalogItem
    action: str
    previous_quantity: float
    new_quantity: float
    applied_quantity: float  # requested quantity in the item's unit
    undo_id: str | None = None


@dataclass
class Actor:
    """The user on whose behalf a mutation runs."""
    user_id: str
    name: str = ""
    role: str = "staff"
