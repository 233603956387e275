"""Spoken/printed feedback phrasing for each stage of a command."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import Ambiguous, StockVoiceError
from .models import ConfirmationDecision, MutationResult

_PAST_TENSE = {"add": "Added", "remove": "Removed", "set": "Set"}


@dataclass
class Feedback:
    text: str
    kind: str  # confirmation | success | error | info


def format_quantity(quantity: float | None) -> str:
    return "?" if quantity is None else f"{quantity:g}"


def describe(action: str, quantity: float | None, unit: str, item: str) -> str:
    amount = format_quantity(quantity)
    if action == "set":
        return f"set {item} to {amount} {unit}".rstrip()
    phrase = f"{action} {amount} {unit}".rstrip()
    return f"{phrase} of {item}"


def confirmation_prompt(
    action: str,
    quantity: float | None,
    unit: str,
    item: str,
    decision: ConfirmationDecision,
) -> Feedback | None:
    """The question put to the user; None when the decision is silent."""
    if decision.feedback_mode == "silent":
        return None
    command = describe(action, quantity, unit, item)
    if decision.feedback_mode == "detailed":
        text = f"I'll {command}. {decision.reason}. Is that correct?"
    else:
        text = f"{command[0].upper()}{command[1:]}?"
    if decision.suggested_correction:
        text = f"{text} {decision.suggested_correction}"
    return Feedback(text, "confirmation")


def success_message(result: MutationResult) -> Feedback:
    item = result.item
    verb = _PAST_TENSE.get(result.action, result.action.capitalize())
    if result.action == "set":
        text = f"{verb} {item.name} to {format_quantity(result.new_quantity)} {item.unit}"
    else:
        text = (
            f"{verb} {format_quantity(result.applied_quantity)} {item.unit} of {item.name}, "
            f"now {format_quantity(result.new_quantity)} {item.unit}"
        )
    return Feedback(text, "success")


def undo_message(result: MutationResult) -> Feedback:
    return Feedback(
        f"Undone: {result.item.name} is back to {format_quantity(result.new_quantity)} {result.item.unit}",
        "success",
    )


def error_message(error: Exception) -> Feedback:
    if isinstance(error, Ambiguous):
        names = ", ".join(error.candidates[:3])
        return Feedback(f'I\'m not sure which "{error.query}" you mean: {names}?', "error")
    if isinstance(error, StockVoiceError):
        return Feedback(error.message, "error")
    return Feedback(f"Error: {error}", "error")
