"""
Text coercion helpers: truthy set, number parsing, dates, container reads.
"""

from datetime import date

import pytest

from app.utils.helpers import (
    as_group_array,
    get_count,
    get_number,
    get_string,
    has_any_value,
    is_truthy,
    normalize_choice,
    parse_date,
    to_record,
    to_text,
)


class TestScalars:
    @pytest.mark.parametrize("value", ["1", "true", "TRUE", " yes ", "On"])
    def test_truthy_set(self, value):
        assert is_truthy(value) is True

    @pytest.mark.parametrize("value", ["0", "", "no", "off", "y", None, True, 1, ["1"]])
    def test_everything_else_is_false(self, value):
        assert is_truthy(value) is False

    def test_get_string_trims_text_only(self):
        assert get_string("  abc ") == "abc"
        assert get_string(12) == ""
        assert get_string(None) == ""

    def test_to_text_renders_numbers(self):
        assert to_text(12) == "12"
        assert to_text(12.0) == "12"
        assert to_text(1.5) == "1.5"
        assert to_text(float("nan")) == ""
        assert to_text(True) == ""

    @pytest.mark.parametrize("value,expected", [
        ("42", 42.0),
        (" 3.5 ", 3.5),
        ("", 0.0),
        ("abc", 0.0),
        ("nan", 0.0),
        ("inf", 0.0),
        (7, 7.0),
        (True, 0.0),
        (None, 0.0),
    ])
    def test_get_number(self, value, expected):
        assert get_number(value) == expected

    def test_get_count_truncates_and_floors_at_zero(self):
        assert get_count("3.9") == 3
        assert get_count("-2") == 0
        assert get_count("x") == 0

    def test_normalize_choice_defaults(self):
        allowed = {"CLIENT", "ZAXON"}
        assert normalize_choice(" zaxon ", allowed, "CLIENT") == "ZAXON"
        assert normalize_choice("broker", allowed, "CLIENT") == "CLIENT"
        assert normalize_choice(None, allowed, "CLIENT") == "CLIENT"


class TestDates:
    @pytest.mark.parametrize("value", ["2024-03-05", "2024-03-05T10:30:00", "05.03.2024"])
    def test_accepted_formats(self, value):
        assert parse_date(value) == date(2024, 3, 5)

    @pytest.mark.parametrize("value", ["", None, "not a date", "31.02.2024"])
    def test_bad_input_is_none(self, value):
        assert parse_date(value) is None


class TestContainers:
    def test_to_record(self):
        assert to_record({"a": 1}) == {"a": 1}
        assert to_record([1]) == {}
        assert to_record("x") == {}

    def test_as_group_array_skips_non_objects(self):
        values = {"trucks": [{"a": "1"}, "junk", None, {"b": "2"}]}
        assert as_group_array(values, "trucks") == [{"a": "1"}, {"b": "2"}]
        assert as_group_array({"trucks": "x"}, "trucks") == []
        assert as_group_array(None, "trucks") == []

    def test_has_any_value(self):
        assert has_any_value({"a": {"b": [{"c": " x "}]}})
        assert not has_any_value({"a": {"b": [{"c": "  "}]}, "d": None})
        assert has_any_value({"n": 0})
        assert not has_any_value({"flag": False})
