"""Tests for the shared NHS number, date and UK format utilities."""

from __future__ import annotations

from datetime import date

from utils import (
    age_on,
    complete_nhs_number,
    is_email,
    is_uk_phone,
    is_uk_postcode,
    is_valid_nhs_number,
    normalize_nhs_number,
    normalize_phone_uk,
    normalize_postcode_uk,
    parse_flexible_date,
    phone_to_national,
)
from utils.nhs_number import compute_check_digit


class TestNhsNumber:
    """Test modulus 11 NHS number checks."""

    def test_known_valid_numbers(self):
        """Test published test numbers pass the checksum."""
        assert is_valid_nhs_number("9434765919")
        assert is_valid_nhs_number("4010232137")

    def test_spacing_is_ignored(self):
        """Test spaced and dashed numbers are normalized first."""
        assert normalize_nhs_number("943 476 5919") == "9434765919"
        assert is_valid_nhs_number("943-476-5919")

    def test_wrong_check_digit_fails(self):
        """Test a single changed check digit fails."""
        assert not is_valid_nhs_number("9434765918")

    def test_wrong_length_fails(self):
        """Test nine and eleven digit values fail."""
        assert not is_valid_nhs_number("943476591")
        assert not is_valid_nhs_number("94347659190")

    def test_complete_nine_digits(self):
        """Test a nine digit prefix gets its check digit appended."""
        assert complete_nhs_number("943476591") == "9434765919"

    def test_check_digit_of_ten_is_never_issued(self):
        """Test prefixes whose check digit would be 10 are rejected."""
        for prefix in range(100000000, 100000100):
            digits = f"{prefix:09d}"
            total = sum(int(d) * w for d, w in zip(digits, (10, 9, 8, 7, 6, 5, 4, 3, 2)))
            if 11 - total % 11 == 10:
                assert compute_check_digit(digits) is None
                assert complete_nhs_number(digits) is None
                return
        raise AssertionError("No prefix with check digit 10 in range")


class TestFlexibleDates:
    """Test legacy date parsing."""

    def test_iso_date(self):
        """Test ISO 8601 dates parse."""
        assert parse_flexible_date("1941-03-05") == date(1941, 3, 5)

    def test_uk_day_first(self):
        """Test UK dates are read day first."""
        assert parse_flexible_date("05/03/1941") == date(1941, 3, 5)
        assert parse_flexible_date("05-03-1941") == date(1941, 3, 5)

    def test_written_month(self):
        """Test written month names parse."""
        assert parse_flexible_date("05 Mar 1941") == date(1941, 3, 5)
        assert parse_flexible_date("05 March 1941") == date(1941, 3, 5)

    def test_invalid_calendar_date(self):
        """Test impossible dates are rejected."""
        assert parse_flexible_date("2024-02-30") is None

    def test_out_of_range_year(self):
        """Test years before 1900 are rejected."""
        assert parse_flexible_date("1850-01-01") is None

    def test_timestamp(self):
        """Test ISO timestamps reduce to their date."""
        assert parse_flexible_date("2023-06-01T10:30:00Z") == date(2023, 6, 1)

    def test_age_on(self):
        """Test age counts whole years."""
        assert age_on(date(1940, 6, 15), date(2024, 6, 14)) == 83
        assert age_on(date(1940, 6, 15), date(2024, 6, 15)) == 84


class TestUkFormats:
    """Test phone, postcode and email checks."""

    def test_phone_numbers(self):
        """Test national and international UK numbers are recognized."""
        assert is_uk_phone("01632 960123")
        assert is_uk_phone("+44 1632 960123")
        assert not is_uk_phone("12345")

    def test_phone_round_trip(self):
        """Test normalizing to +44 form and back."""
        assert normalize_phone_uk("01632 960123") == "+441632960123"
        assert phone_to_national("+441632960123") == "01632960123"

    def test_postcodes(self):
        """Test postcodes are recognized and normalized."""
        assert is_uk_postcode("SW1A 1AA")
        assert is_uk_postcode("m11ae")
        assert normalize_postcode_uk("m11ae") == "M1 1AE"
        assert not is_uk_postcode("12345")

    def test_email(self):
        """Test email address shape."""
        assert is_email("carer@example.org")
        assert not is_email("not an email")
