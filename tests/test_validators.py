"""Checkout input validation helpers."""

from datetime import datetime, timezone

from enrollpay.services.checkout.validators import (
    is_card_expired,
    is_uuid,
    is_valid_card_number,
    is_valid_email,
    is_valid_phone,
    luhn_check,
    normalize_month,
    normalize_year,
    parse_installments,
    sanitize_string,
)


def test_luhn():
    assert luhn_check("4242424242424242")
    assert not luhn_check("4242424242424241")
    assert not luhn_check("4242-4242")


def test_card_number_length_bounds():
    assert is_valid_card_number("4222222222222")
    assert not is_valid_card_number("42424242424")
    assert not is_valid_card_number("4" * 20)


def test_expiration_compares_whole_months():
    now = datetime(2026, 5, 28, tzinfo=timezone.utc)

    assert not is_card_expired("05", "2026", now)
    assert is_card_expired("04", "2026", now)
    assert is_card_expired("12", "2025", now)


def test_month_and_year_normalization():
    assert normalize_month("3") == "03"
    assert normalize_month("13") is None
    assert normalize_month("") is None
    assert normalize_year("29") == "2029"
    assert normalize_year("2031") == "2031"
    assert normalize_year("203") is None


def test_installments_are_clamped():
    assert parse_installments(None) == 1
    assert parse_installments("abc") == 1
    assert parse_installments("3") == 3
    assert parse_installments(0) == 1
    assert parse_installments(48) == 12


def test_contact_fields():
    assert is_valid_email("maria@example.com")
    assert not is_valid_email("maria@example")
    assert is_valid_phone("(81) 99999-0000")
    assert not is_valid_phone("99999")
    assert is_uuid("3f1c8a52-9a4e-4c1b-8d2e-1a2b3c4d5e6f")
    assert not is_uuid("lead-123")


def test_sanitize_string_trims_and_truncates():
    assert sanitize_string("  hello  ") == "hello"
    assert sanitize_string("   ") is None
    assert sanitize_string("abcdef", 3) == "abc"
