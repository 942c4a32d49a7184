"""
Unit tests for match-value normalization.

Equal logical values must produce equal keys whatever their representation,
and the normalizer must never raise.
"""

from decimal import Decimal

import pytest

from item_bridge.migration.normalizer import normalize_match_value


class TestEmptyValues:
    """Values that carry no match key."""

    @pytest.mark.parametrize("value", [None, "", "   ", [], [None, ""]])
    def test_empty_values_normalize_to_empty_string(self, value):
        assert normalize_match_value(value) == ""


class TestNumbers:
    """Numeric canonicalization."""

    @pytest.mark.parametrize("value", [123, 123.0, "123", " 123 ", "123.00", Decimal("123")])
    def test_integral_representations_match(self, value):
        assert normalize_match_value(value) == "123"

    def test_half_up_rounds_to_whole_number(self):
        assert normalize_match_value(15.2) == "15"
        assert normalize_match_value("2.5") == "3"
        assert normalize_match_value(-2.5) == "-3"

    def test_rounding_none_keeps_fraction(self):
        assert normalize_match_value(15.2, rounding="none") == "15.2"
        assert normalize_match_value("2.50", rounding="none") == "2.5"
        assert normalize_match_value(7.0, rounding="none") == "7"

    def test_exponent_strings_are_numeric(self):
        assert normalize_match_value("1e3") == "1000"

    def test_non_finite_floats_do_not_raise(self):
        assert normalize_match_value(float("nan")) == "nan"
        assert normalize_match_value(float("inf")) == "inf"

    def test_booleans_are_not_numbers(self):
        assert normalize_match_value(True) == "true"
        assert normalize_match_value(False) == "false"


class TestStrings:
    """Text canonicalization."""

    def test_strings_are_trimmed_and_lowercased(self):
        assert normalize_match_value("  Alice@Example.COM ") == "alice@example.com"

    def test_numeric_looking_identifiers_with_letters_stay_text(self):
        assert normalize_match_value("A-001") == "a-001"


class TestCollections:
    """Lists and dictionaries."""

    def test_lists_are_order_insensitive(self):
        assert normalize_match_value(["b", "A"]) == normalize_match_value(["a", "B"])
        assert normalize_match_value(["b", "a"]) == "a||b"

    def test_list_drops_empty_elements(self):
        assert normalize_match_value(["x", "", None]) == "x"

    def test_dict_prefers_identifier_keys(self):
        assert normalize_match_value({"item_id": 42, "title": "Foo"}) == "42"
        assert normalize_match_value({"profile_id": "7"}) == "7"

    def test_dict_uses_value_entry(self):
        assert normalize_match_value({"type": "work", "value": "Bob@Example.com"}) == (
            "bob@example.com"
        )

    def test_email_field_values_match_plain_text(self):
        email_field = [{"type": "work", "value": "USER@EXAMPLE.COM"}]
        assert normalize_match_value(email_field) == normalize_match_value("user@example.com")

    def test_other_dicts_use_sorted_json(self):
        assert normalize_match_value({"b": 1, "a": "X"}) == '{"a": "x", "b": 1}'
