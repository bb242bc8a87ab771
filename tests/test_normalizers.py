# tests/test_normalizers.py

"""
Tests for normalization helpers.
"""

from datetime import date, datetime

from app.core.normalizers import (
    normalize_amount,
    normalize_date,
    normalize_string,
    tokenize,
    normalize_customer_name,
    normalize_email,
    compact_identifier,
    identifier_segments,
    amount_bucket,
    bigram_similarity,
    extract_customer_info,
    pnl_line,
)


class TestAmounts:

    def test_numbers_are_rounded(self):
        assert normalize_amount(10) == 10.0
        assert normalize_amount(10.005) in (10.0, 10.01)
        assert normalize_amount(99.999) == 100.0

    def test_european_format(self):
        assert normalize_amount("1.234,56") == 1234.56
        assert normalize_amount("12,5") == 12.5

    def test_currency_symbols_and_thousands(self):
        assert normalize_amount("$1,234.56") == 1234.56
        assert normalize_amount("-€250.00") == -250.0

    def test_unreadable_values(self):
        assert normalize_amount(None) is None
        assert normalize_amount("n/a") is None
        assert normalize_amount(True) is None


class TestDates:

    def test_iso_with_timezone(self):
        assert normalize_date("2025-03-10T12:00:00Z") == date(2025, 3, 10)

    def test_datetime_becomes_date(self):
        assert normalize_date(datetime(2025, 3, 10, 23, 59)) == date(2025, 3, 10)

    def test_day_first_format(self):
        assert normalize_date("25/03/2025") == date(2025, 3, 25)

    def test_garbage(self):
        assert normalize_date("soon") is None
        assert normalize_date(None) is None

    def test_out_of_range_timestamp(self):
        assert normalize_date(10**20) is None
        assert normalize_date(float("nan")) is None


class TestStrings:

    def test_normalize_string_strips_accents_and_punctuation(self):
        assert normalize_string("Peña & Co., S.L.") == "pena co s l"

    def test_tokenize_drops_short_tokens(self):
        assert tokenize("Jane Doe Clinic") == frozenset({"jane", "doe", "clinic"})
        assert tokenize("A to Z Ltd") == frozenset({"ltd"})

    def test_customer_name_suffixes(self):
        assert normalize_customer_name("Acme Holdings S.L.") == "acme holdings"
        assert normalize_customer_name("Acme Inc.") == "acme"
        assert normalize_customer_name("Müller GmbH") == "muller"

    def test_email_alias_removed(self):
        assert normalize_email("John+promo@Example.com") == "john@example.com"
        assert normalize_email("not-an-email") == ""

    def test_compact_identifier(self):
        assert compact_identifier("INV-2025/001") == "inv2025001"
        assert compact_identifier(None) == ""

    def test_identifier_segments(self):
        segments = identifier_segments("Payment INV-2025-001 thanks")
        assert "inv2025001" in segments
        assert "2025" in segments
        assert "001" not in segments

    def test_amount_bucket(self):
        assert amount_bucket(99.6) == 100
        assert amount_bucket(-250.2) == 250


class TestSimilarity:

    def test_identical(self):
        assert bigram_similarity("Acme Supplies", "ACME SUPPLIES") == 1.0

    def test_unrelated(self):
        assert bigram_similarity("abc", "xyz") == 0.0

    def test_partial(self):
        score = bigram_similarity("Iberdrola", "Iberdrola Clientes")
        assert 0.5 < score < 1.0


class TestMetadata:

    def test_extract_customer_info(self):
        name, email = extract_customer_info({"billing_name": "Jane Doe", "email": "jane@clinic.com"})
        assert name == "Jane Doe"
        assert email == "jane@clinic.com"

    def test_extract_customer_info_empty(self):
        assert extract_customer_info(None) == (None, None)

    def test_pnl_line(self):
        assert pnl_line("102.3") == "102"
        assert pnl_line("105.0") == "105"
        assert pnl_line(None) is None
