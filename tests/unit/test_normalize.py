"""Unit tests for ffcam_etl.normalize."""

import pytest

from ffcam_etl.normalize import (
    CLUB_PREFIXES,
    date_or_none,
    extract_level_short,
    format_date,
    is_club_member,
    parse_validation_status,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  STG-FEA10  ") == "STG-FEA10"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# format_date
# ---------------------------------------------------------------------------

class TestFormatDate:
    def test_french_date(self):
        assert format_date("15/03/2024") == "2024-03-15"

    def test_zero_pads_day_and_month(self):
        assert format_date("5/3/2024") == "2024-03-05"

    def test_iso_unchanged(self):
        assert format_date("2024-03-15") == "2024-03-15"

    def test_empty(self):
        assert format_date("") == ""

    def test_none(self):
        assert format_date(None) == ""

    def test_zero_sentinel(self):
        assert format_date("0000-00-00") == ""

    def test_unrecognised_shape_unchanged(self):
        assert format_date("mars 2024") == "mars 2024"


class TestDateOrNone:
    def test_empty_becomes_none(self):
        assert date_or_none("") is None
        assert date_or_none("0000-00-00") is None

    def test_value_normalized(self):
        assert date_or_none("01/12/2023") == "2023-12-01"


# ---------------------------------------------------------------------------
# is_club_member
# ---------------------------------------------------------------------------

class TestIsClubMember:
    @pytest.mark.parametrize("number", ["690012345678", "690123456789", "6900"])
    def test_club_numbers(self, number):
        assert is_club_member(number) is True

    @pytest.mark.parametrize("number", ["740012345678", "069001234567", "", None])
    def test_non_club_numbers(self, number):
        assert is_club_member(number) is False

    def test_custom_prefixes(self):
        assert is_club_member("740012345678", prefixes=("7400",)) is True
        assert is_club_member("690012345678", prefixes=("7400",)) is False

    def test_default_prefixes(self):
        assert CLUB_PREFIXES == ("6900", "690")


# ---------------------------------------------------------------------------
# Grid cell parsing
# ---------------------------------------------------------------------------

class TestParseValidationStatus:
    def test_green_circle_is_validated(self):
        html = '<i class="fa fa-circle text-vert"></i>'
        assert parse_validation_status(html) is True

    def test_red_circle_is_not_validated(self):
        html = '<i class="fa fa-circle text-rouge"></i>'
        assert parse_validation_status(html) is False

    def test_green_without_circle(self):
        assert parse_validation_status('<span class="text-vert">ok</span>') is False

    def test_empty(self):
        assert parse_validation_status("") is False
        assert parse_validation_status(None) is False


class TestExtractLevelShort:
    @pytest.mark.parametrize("level,expected", [
        ("INITIE - Escalade en SAE", "INITIE"),
        ("PERFECTIONNE Alpinisme", "PERFECTIONNE"),
        ("SPECIALISE", "SPECIALISE"),
    ])
    def test_known_prefixes(self, level, expected):
        assert extract_level_short(level) == expected

    def test_non_standard(self):
        assert extract_level_short("Niveau 2") is None

    def test_prefix_must_start_label(self):
        assert extract_level_short("Grimpeur INITIE") is None

    def test_empty(self):
        assert extract_level_short("") is None
        assert extract_level_short(None) is None
