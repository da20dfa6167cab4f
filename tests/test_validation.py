from datetime import date

import pytest

from gateway.validation import detect_card_network, is_valid_vpa, luhn_check, validate_expiry


def test_luhn_check():
    assert luhn_check("4111111111111111")
    assert not luhn_check("4111111111111112")


def test_luhn_check_ignores_separators_and_rejects_bad_lengths():
    assert luhn_check("4111 1111 1111 1111")
    assert not luhn_check("4111")
    assert not luhn_check("")
    assert not luhn_check(None)


@pytest.mark.parametrize(
    "number, network",
    [
        ("4111111111111111", "visa"),
        ("5105105105105100", "mastercard"),
        ("5500000000000004", "mastercard"),
        ("340000000000009", "amex"),
        ("370000000000002", "amex"),
        ("6011000000000004", "rupay"),
        ("6522000000000000", "rupay"),
        ("8112000000000000", "rupay"),
        ("8912000000000000", "rupay"),
        ("3530111333300000", "unknown"),
        ("5600000000000000", "unknown"),
    ],
)
def test_detect_card_network(number, network):
    assert detect_card_network(number) == network


def test_vpa_format():
    assert is_valid_vpa("user@bank")
    assert is_valid_vpa("first.last-1_x@okaxis")
    assert not is_valid_vpa("user@bank.com")
    assert not is_valid_vpa("userbank")
    assert not is_valid_vpa(None)


def test_expiry_month_13_is_invalid():
    assert not validate_expiry("13", "2099")
    assert not validate_expiry(0, 2099)


def test_expiry_two_digit_year_adds_2000():
    today = date(2026, 10, 19)
    assert validate_expiry("12", "26", today=today)
    assert not validate_expiry("12", "25", today=today)
    assert validate_expiry(1, 99, today=today)


def test_expiry_relative_to_current_month():
    today = date(2026, 10, 19)
    assert validate_expiry(10, 2026, today=today)
    assert validate_expiry(11, 2026, today=today)
    assert not validate_expiry(9, 2026, today=today)
    assert not validate_expiry("ab", "2026", today=today)
