"""
Unit tests for value coercion and column transformations.
"""
import pytest
from datetime import date, datetime

from ingestion_engine.core.errors import DataValidationError
from ingestion_engine.services.coercion import coerce_value, format_for_file
from ingestion_engine.services.transformations import (
    apply_transformation,
    available_transformations,
    is_known,
)
from ingestion_engine.services.type_mapping import to_logical


def coerce(value, native, strict=True):
    return coerce_value(value, to_logical(native), "col", strict=strict)


class TestNumericCoercion:

    def test_integer_text(self):
        assert coerce("42", "Int64") == 42
        assert coerce(" -7 ", "Int32") == -7

    def test_thousands_separators(self):
        assert coerce("1,000", "Int64") == 1000

    def test_whole_float_text_is_an_integer(self):
        assert coerce("4.0", "Int64") == 4

    def test_fractional_value_is_rejected(self):
        with pytest.raises(DataValidationError) as exc:
            coerce("4.5", "Int64")
        assert exc.value.column == "col"
        assert exc.value.value == "4.5"

    def test_float(self):
        assert coerce("3.25", "Float64") == 3.25
        assert coerce(3, "Float64") == 3.0

    def test_garbage_is_rejected(self):
        with pytest.raises(DataValidationError):
            coerce("abc", "Float64")


class TestNullHandling:
    """Empty values count as null except for string columns."""

    def test_empty_into_nullable_integer(self):
        assert coerce("", "Nullable(Int64)") is None
        assert coerce(None, "Nullable(Int64)") is None

    def test_empty_into_non_nullable_integer(self):
        with pytest.raises(DataValidationError):
            coerce("", "Int64")

    def test_empty_string_stays_a_string(self):
        assert coerce("", "String") == ""

    def test_null_into_non_nullable_string(self):
        with pytest.raises(DataValidationError):
            coerce(None, "String")


class TestOtherTypes:

    @pytest.mark.parametrize("value,expected", [
        ("true", True), ("Yes", True), ("1", True),
        ("false", False), ("N", False), (0, False),
    ])
    def test_booleans(self, value, expected):
        assert coerce(value, "Bool") is expected

    def test_unknown_boolean_text(self):
        with pytest.raises(DataValidationError):
            coerce("maybe", "Bool")

    def test_dates(self):
        assert coerce("2024-03-05", "Date") == date(2024, 3, 5)
        assert coerce(datetime(2024, 3, 5, 10, 30), "Date") == date(2024, 3, 5)

    def test_datetimes(self):
        assert coerce("2024-03-05 10:30:00", "DateTime") == datetime(2024, 3, 5, 10, 30)
        assert coerce(date(2024, 3, 5), "DateTime") == datetime(2024, 3, 5)

    def test_non_string_into_string(self):
        assert coerce(12, "String") == "12"
        assert coerce(date(2024, 3, 5), "String") == "2024-03-05"

    def test_json_array(self):
        assert coerce("[1, 2, 3]", "Array(Int64)") == [1, 2, 3]

    def test_single_quoted_array(self):
        assert coerce("['a','b']", "Array(String)") == ["a", "b"]

    def test_array_elements_are_validated(self):
        with pytest.raises(DataValidationError):
            coerce("[1, 'x']", "Array(Int64)")

    def test_nullable_array_elements(self):
        assert coerce("[1, null]", "Array(Nullable(Int64))") == [1, None]


class TestLenientMode:
    """With validation off, unconvertible values pass through unchanged."""

    def test_raw_value_is_returned(self):
        assert coerce("abc", "Int64", strict=False) == "abc"

    def test_convertible_values_are_still_converted(self):
        assert coerce("12", "Int64", strict=False) == 12


class TestFormatForFile:

    def test_values(self):
        assert format_for_file(None) == ""
        assert format_for_file(True) == "true"
        assert format_for_file(1.5) == "1.5"
        assert format_for_file(date(2024, 3, 5)) == "2024-03-05"
        assert format_for_file(datetime(2024, 3, 5, 10, 0)) == "2024-03-05 10:00:00"
        assert format_for_file([1, None, "a"]) == '[1, null, "a"]'


class TestTransformations:

    def test_registry(self):
        assert "trim" in available_transformations()
        assert is_known(None)
        assert is_known("upper")
        assert not is_known("reverse")

    def test_apply(self):
        assert apply_transformation("trim", "  a  ") == "a"
        assert apply_transformation("upper", "abc") == "ABC"
        assert apply_transformation("null_if_empty", "   ") is None
        assert apply_transformation("digits_only", "+1 (555) 010-99") == "155501099"
        assert apply_transformation(None, " x ") == " x "

    def test_non_strings_pass_through(self):
        assert apply_transformation("upper", 5) == 5
