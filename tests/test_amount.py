"""Exact token amount formatting."""

from decimal import Decimal

import pytest

from eth_multiread.amount import Amount, format_token_amount


@pytest.mark.parametrize(
    "raw,scale,expected",
    [
        ("1000000000000000000", 18, "1"),
        ("123456789012345678", 18, "0.123456789012345678"),
        ("0", 18, "0"),
        ("5", 0, "5"),
        ("100", 2, "1"),
        (1_500_000, 6, "1.5"),
        (1, 18, "0.000000000000000001"),
        (120_000, 2, "1200"),
        (0, 0, "0"),
    ],
)
def test_format_token_amount(raw, scale, expected):
    """Whole and fractional parts are split exactly."""
    assert format_token_amount(raw, scale) == expected


def test_format_uint256_max():
    """Largest possible balance does not lose precision."""
    max_uint = 2**256 - 1
    formatted = format_token_amount(max_uint, 18)
    digits = str(max_uint)
    assert formatted == f"{digits[:-18]}.{digits[-18:].rstrip('0')}"
    assert len(digits) == 78


def test_format_huge_scale():
    """Raw value shorter than the scale gets a zero whole part."""
    assert format_token_amount(42, 77) == "0." + "0" * 75 + "42"


@pytest.mark.parametrize("raw", [-1, "-1", "1.5", "abc", "", 1.0, None, True])
def test_format_bad_raw(raw):
    """Only non-negative integers are accepted."""
    with pytest.raises(ValueError):
        format_token_amount(raw, 18)


@pytest.mark.parametrize("scale", [-1, 1.5, "18"])
def test_format_bad_scale(scale):
    with pytest.raises(ValueError):
        format_token_amount(1, scale)


def test_amount_from_decoded_shapes():
    """Amount accepts int, digit string and one element tuple."""
    assert Amount.from_value(1_500_000, 6) == Amount(raw=1_500_000, scale=6)
    assert Amount.from_value("1500000", 6) == Amount(raw=1_500_000, scale=6)
    assert Amount.from_value((1_500_000,), 6) == Amount(raw=1_500_000, scale=6)
    assert str(Amount.from_value([25], 1)) == "2.5"

    with pytest.raises(ValueError):
        Amount.from_value((1, 2), 6)


def test_amount_as_decimal():
    """Decimal conversion keeps all digits."""
    amount = Amount(raw=123456789012345678901234567890, scale=18)
    assert amount.as_decimal() == Decimal("123456789012.34567890123456789")
    assert amount.format() == "123456789012.34567890123456789"
