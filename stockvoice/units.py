"""Unit classification and conversion.

Volume converts through liters, weight through grams. Count units never
convert into each other: "boxes" and "pieces" are different things.
"""

from __future__ import annotations

from typing import Literal

from .errors import IncompatibleUnits, UnknownUnit

UNIT_CLASSES = Literal["volume", "weight", "count", "unknown"]

# Liters per unit
VOLUME_FACTORS: dict[str, float] = {
    "liters": 1.0, "liter": 1.0, "litres": 1.0, "litre": 1.0, "l": 1.0,
    "gallons": 3.78541, "gallon": 3.78541, "gal": 3.78541,
    "oz": 0.0295735, "ounces": 0.0295735, "ounce": 0.0295735,
    "fl oz": 0.0295735,
    "ml": 0.001, "milliliters": 0.001, "milliliter": 0.001,
    "millilitres": 0.001, "millilitre": 0.001,
    "cups": 0.236588, "cup": 0.236588,
    "tablespoons": 0.0147868, "tablespoon": 0.0147868, "tbsp": 0.0147868,
    "teaspoons": 0.00492892, "teaspoon": 0.00492892, "tsp": 0.00492892,
    "quarts": 0.946353, "quart": 0.946353, "qt": 0.946353,
    "pints": 0.473176, "pint": 0.473176, "pt": 0.473176,
}

# Grams per unit
WEIGHT_FACTORS: dict[str, float] = {
    "g": 1.0, "gram": 1.0, "grams": 1.0,
    "kg": 1000.0, "kilogram": 1000.0, "kilograms": 1000.0, "kilo": 1000.0, "kilos": 1000.0,
    "pounds": 453.592, "pound": 453.592, "lbs": 453.592, "lb": 453.592,
}

COUNT_UNITS = frozenset({
    "piece", "pieces", "box", "boxes", "bottle", "bottles", "bag", "bags",
    "can", "cans", "case", "cases", "sleeve", "sleeves", "unit", "units",
    "each", "pack", "packs", "carton", "cartons", "dozen",
})

# Singular/plural spellings of the same count unit pass through unchanged
_COUNT_CANONICAL = {
    "piece": "pieces", "box": "boxes", "bottle": "bottles", "bag": "bags",
    "can": "cans", "case": "cases", "sleeve": "sleeves", "unit": "units",
    "pack": "packs", "carton": "cartons",
}


def normalize_unit(unit: str | None) -> str:
    return " ".join((unit or "").strip().lower().rstrip(".").split())


def classify(unit: str | None) -> str:
    """Return the unit class: volume, weight, count or unknown."""
    name = normalize_unit(unit)
    if name in VOLUME_FACTORS:
        return "volume"
    if name in WEIGHT_FACTORS:
        return "weight"
    if name in COUNT_UNITS:
        return "count"
    return "unknown"


def is_compatible(from_unit: str | None, to_unit: str | None) -> bool:
    try:
        convert(1.0, from_unit, to_unit)
    except (IncompatibleUnits, UnknownUnit):
        return False
    return True


def convert(quantity: float, from_unit: str | None, to_unit: str | None) -> float:
    """Convert *quantity* between two units of the same class."""
    source, target = normalize_unit(from_unit), normalize_unit(to_unit)
    source_class, target_class = classify(source), classify(target)

    if source_class == "unknown":
        raise UnknownUnit(from_unit or "")
    if target_class == "unknown":
        raise UnknownUnit(to_unit or "")
    if source_class != target_class:
        raise IncompatibleUnits(from_unit or "", to_unit or "")

    if source_class == "count":
        if _COUNT_CANONICAL.get(source, source) != _COUNT_CANONICAL.get(target, target):
            raise IncompatibleUnits(from_unit or "", to_unit or "")
        return quantity

    if source == target:
        return quantity

    factors = VOLUME_FACTORS if source_class == "volume" else WEIGHT_FACTORS
    return quantity * factors[source] / factors[target]
