"""Typed errors surfaced by the pipeline.

Each error carries a stable ``code`` and an HTTP-ish ``status_code`` so the
routing layer can translate it without inspecting messages.
"""

from __future__ import annotations


class StockVoiceError(Exception):
    """Base class for every error the pipeline raises on purpose."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StockVoiceError):
    """No plausible catalog item (or undo record) for the query."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, query: str, message: str | None = None):
        super().__init__(message or f'No item matching "{query}" was found')
        self.query = query


class Ambiguous(StockVoiceError):
    """Several catalog items are plausible and none is a confident match."""

    code = "AMBIGUOUS"
    status_code = 409

    def __init__(self, query: str, candidates: list[str]):
        names = ", ".join(candidates) if candidates else "none"
        super().__init__(f'"{query}" is ambiguous; did you mean one of: {names}?')
        self.query = query
        self.candidates = list(candidates)


class ValidationError(StockVoiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class IncompatibleUnits(ValidationError):
    def __init__(self, from_unit: str, to_unit: str):
        super().__init__(f"Incompatible units: {from_unit} and {to_unit}")
        self.from_unit = from_unit
        self.to_unit = to_unit


class UnknownUnit(ValidationError):
    def __init__(self, unit: str):
        super().__init__(f"Unknown unit: {unit!r}")
        self.unit = unit


class InterpretationFailure(StockVoiceError):
    """The language-model provider failed or returned unusable output."""

    code = "INTERPRETATION_FAILURE"
    status_code = 502


class PersistenceError(StockVoiceError):
    code = "PERSISTENCE_ERROR"
    status_code = 500


class Cancelled(StockVoiceError):
    """A pending command was declined or timed out. Not a fault."""

    code = "CANCELLED"
    status_code = 200

    def __init__(self, reason: str = "Cancelled"):
        super().__init__(reason)
        self.reason = reason
