"""Tests for survey natural ids and edit windows."""

from datetime import datetime, timedelta, timezone

import pytest

from fieldsync.core.survey_policy import (
    SurveyUniqueId,
    compute_edit_deadlines,
    format_unique_id,
    parse_unique_id,
    validate_unique_id,
)


class TestValidateUniqueId:
    """Tests for the natural id format."""

    @pytest.mark.parametrize("value", [
        "101-201-5-A-5",
        "101-201-1-A-1",
        "101-201-12-B2-007",
        "0001-99999-10-abcdefghij-R 12",
        "101-201-05-A-5",
    ])
    def test_valid_ids(self, value):
        """Test well-formed ids are accepted."""
        assert validate_unique_id(value) is True

    @pytest.mark.parametrize("value", [
        "10-20-13-A-5",          # class out of range, short codes
        "101-201-13-A-5",        # class out of range
        "101-201-0-A-5",         # class out of range
        "10-201-5-A-5",          # district too short
        "101-20-5-A-5",          # school too short
        "1O1-201-5-A-5",         # letter in district
        "101-201-five-A-5",      # non-numeric class
        "101-201-5--5",          # empty section
        "101-201-5-ABCDEFGHIJK-5",  # section too long
        "101-201-5-A_B-5",       # section not alphanumeric
        "101-201-5-A-",          # empty roll
        "101-201-5-A-123456789012345678901",  # roll too long
        "101-201-5-A-5-6",       # six segments
        "101-201-5-A",           # four segments
        "101-201-5-A-5\n",       # trailing newline
        "١٠١-201-5-A-5",         # non-ASCII digits
        "",
    ])
    def test_invalid_ids(self, value):
        """Test malformed ids are rejected."""
        assert validate_unique_id(value) is False

    @pytest.mark.parametrize("value", [None, 101201, ["101-201-5-A-5"], b"101-201-5-A-5"])
    def test_non_string_never_raises(self, value):
        """Test non-string input returns False instead of raising."""
        assert validate_unique_id(value) is False


class TestParseUniqueId:
    """Tests for parsing and formatting natural ids."""

    def test_parse_returns_segments(self):
        """Test parsed segments are typed and complete."""
        parsed = parse_unique_id("101-201-5-A-17")

        assert parsed == SurveyUniqueId(
            district_code="101",
            school_code="201",
            class_number=5,
            section="A",
            roll_no="17",
        )

    def test_parse_invalid_returns_none(self):
        """Test an invalid id parses to None."""
        assert parse_unique_id("10-20-13-A-5") is None

    def test_format_matches_parse(self):
        """Test formatting rebuilds the original id."""
        uid = format_unique_id("101", "201", 5, "A", "17")

        assert uid == "101-201-5-A-17"
        assert str(parse_unique_id(uid)) == uid


class TestEditDeadlines:
    """Tests for edit window computation."""

    def test_deadlines_are_24h_and_15d(self):
        """Test team and partner windows."""
        t = datetime(2024, 11, 5, 9, 30, tzinfo=timezone.utc)

        deadlines = compute_edit_deadlines(t)

        assert deadlines.team == t + timedelta(hours=24)
        assert deadlines.partner == t + timedelta(days=15)

    def test_deadlines_are_pure(self):
        """Test the same input always yields the same deadlines."""
        t = datetime(2024, 2, 28, 23, 0, tzinfo=timezone.utc)

        assert compute_edit_deadlines(t) == compute_edit_deadlines(t)
        assert compute_edit_deadlines(t).team == datetime(2024, 2, 29, 23, 0, tzinfo=timezone.utc)
