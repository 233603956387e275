"""Text helpers shared by the resolver, the interpreter and the confirmation policy."""

from __future__ import annotations

import re

from rapidfuzz.distance import Levenshtein

from .models import FILLER_WORDS

_NON_WORD = re.compile(r"[^a-z0-9.\s]")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")

RELATIVE_TERMS = (
    "more", "another", "additional", "extra", "same", "again",
    "also", "too", "as well", "like before",
)

_UNITS_WORDS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14,
    "fifteen": 15, "sixteen": 16, "seventeen": 17, "eighteen": 18,
    "nineteen": 19,
}
_TENS_WORDS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}
_SCALE_WORDS = {"hundred": 100, "thousand": 1000}
NUMBER_WORDS = frozenset(_UNITS_WORDS) | frozenset(_TENS_WORDS) | frozenset(_SCALE_WORDS)


def normalize(text: str) -> str:
    """Lower-case, drop punctuation (keeping decimal points) and collapse spaces."""
    cleaned = _NON_WORD.sub(" ", (text or "").lower())
    # a trailing or dangling "." is punctuation, not a decimal point
    cleaned = re.sub(r"(?<!\d)\.|\.(?!\d)", " ", cleaned)
    return " ".join(cleaned.split())


def tokens(text: str) -> list[str]:
    """Whitespace tokens of *text* with filler words removed."""
    return [t for t in normalize(text).split() if t not in FILLER_WORDS]


def token_similarity(a: str, b: str) -> float:
    """|A ∩ B| / max(|A|, |B|) over the filler-free token sets."""
    set_a, set_b = set(tokens(a)), set(tokens(b))
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / max(len(set_a), len(set_b))


def char_similarity(a: str, b: str) -> float:
    """Normalised Levenshtein similarity of the cleaned names (0.0 to 1.0)."""
    left, right = " ".join(tokens(a)), " ".join(tokens(b))
    if not left and not right:
        return 1.0
    return Levenshtein.normalized_similarity(left, right)


def name_similarity(a: str, b: str) -> float:
    """Best of token overlap and character similarity."""
    return max(token_similarity(a, b), char_similarity(a, b))


def contains_relative_terms(text: str) -> bool:
    lowered = f" {normalize(text)} "
    return any(f" {term} " in lowered for term in RELATIVE_TERMS)


def words_to_number(words: list[str]) -> float | None:
    """Convert spelled-out number words ("twenty five") to a number."""
    if not words or any(w not in NUMBER_WORDS for w in words):
        return None
    total = 0
    current = 0
    for word in words:
        if word in _UNITS_WORDS:
            current += _UNITS_WORDS[word]
        elif word in _TENS_WORDS:
            current += _TENS_WORDS[word]
        elif word == "hundred":
            current = max(current, 1) * 100
        else:
            total += max(current, 1) * _SCALE_WORDS[word]
            current = 0
    return float(total + current)


def find_quantity(text: str) -> float | None:
    """Return the first number in *text*, written as digits or as words."""
    cleaned = normalize(text)
    match = _NUMBER.search(cleaned)
    words = cleaned.split()

    spelled: float | None = None
    spelled_at: int | None = None
    run: list[str] = []
    for index, word in enumerate(words + [""]):
        if word in NUMBER_WORDS:
            run.append(word)
            continue
        if run:
            spelled = words_to_number(run)
            spelled_at = index - len(run)
            break

    if match and spelled is not None and spelled_at is not None:
        # whichever comes first in the sentence wins
        digit_at = len(cleaned[:match.start()].split())
        return float(match.group()) if digit_at <= spelled_at else spelled
    if match:
        return float(match.group())
    return spelled
