"""Tests for unit classification and conversion."""

import pytest

from stockvoice.errors import IncompatibleUnits, UnknownUnit, ValidationError
from stockvoice.units import classify, convert, is_compatible, normalize_unit


# ---------------------------------------------------------------------------
# classify / normalize_unit
# ---------------------------------------------------------------------------

class TestClassify:
    @pytest.mark.parametrize("unit,expected", [
        ("gallons", "volume"),
        ("Liters", "volume"),
        ("oz", "volume"),
        ("lbs", "weight"),
        ("kg", "weight"),
        ("boxes", "count"),
        ("sleeves", "count"),
        ("scoops", "unknown"),
        ("", "unknown"),
    ])
    def test_classes(self, unit, expected):
        assert classify(unit) == expected

    def test_normalize_unit(self):
        assert normalize_unit("  Gallons. ") == "gallons"
        assert normalize_unit(None) == ""


# ---------------------------------------------------------------------------
# convert
# ---------------------------------------------------------------------------

class TestConvert:
    def test_gallons_to_liters(self):
        assert convert(2, "gallons", "liters") == pytest.approx(7.57082)

    def test_liters_to_gallons(self):
        assert convert(3.78541, "liters", "gallons") == pytest.approx(1.0)

    def test_pounds_to_kilograms(self):
        assert convert(2, "pounds", "kg") == pytest.approx(0.907184)

    def test_grams_to_pounds(self):
        assert convert(453.592, "g", "lb") == pytest.approx(1.0)

    def test_same_unit_is_identity(self):
        assert convert(5, "liters", "liters") == 5

    def test_singular_and_plural_count_units(self):
        assert convert(3, "box", "boxes") == 3

    @pytest.mark.parametrize("from_unit,to_unit", [
        ("gallons", "liters"),
        ("oz", "ml"),
        ("cups", "tablespoons"),
        ("quarts", "cups"),
        ("pounds", "kg"),
        ("g", "lb"),
        ("bag", "bags"),
    ])
    def test_conversion_reverses(self, from_unit, to_unit):
        there = convert(12.5, from_unit, to_unit)
        assert convert(there, to_unit, from_unit) == pytest.approx(12.5)

    def test_different_count_units_rejected(self):
        with pytest.raises(IncompatibleUnits):
            convert(3, "boxes", "bottles")

    def test_volume_to_weight_rejected(self):
        with pytest.raises(IncompatibleUnits) as exc:
            convert(1, "gallons", "pounds")
        assert exc.value.from_unit == "gallons"
        assert exc.value.to_unit == "pounds"

    def test_unknown_unit(self):
        with pytest.raises(UnknownUnit) as exc:
            convert(1, "scoops", "grams")
        assert exc.value.unit == "scoops"

    def test_unit_errors_are_validation_errors(self):
        with pytest.raises(ValidationError):
            convert(1, "gallons", "boxes")
        with pytest.raises(ValidationError):
            convert(1, "gallons", "handfuls")


class TestIsCompatible:
    def test_compatible(self):
        assert is_compatible("gallons", "ml")
        assert is_compatible("lb", "kilograms")

    def test_incompatible(self):
        assert not is_compatible("gallons", "pounds")
        assert not is_compatible("cans", "bags")
        assert not is_compatible("scoops", "scoops")
