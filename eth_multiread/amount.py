"""Exact token amount formatting.

Convert raw ERC-20 integer units to human readable decimal strings.

- Only integer and string arithmetic, never binary floating point

- Works for full uint256 range (77 digits)

Example:

.. code-block:: python

    assert format_token_amount(10**18, 18) == "1"
    assert format_token_amount("123456789012345678", 18) == "0.123456789012345678"
    assert Amount.from_value(1_500_000, 6).format() == "1.5"

"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

_DIGITS = re.compile(r"^[0-9]+$")


def _parse_raw(raw: int | str) -> int:
    if type(raw) == int:
        value = raw
    elif type(raw) == str:
        cleaned = raw.strip()
        if not _DIGITS.match(cleaned):
            raise ValueError(f"Raw amount must be a string of decimal digits, got {raw!r}")
        value = int(cleaned)
    else:
        raise ValueError(f"Raw amount must be int or str, got {type(raw)}: {raw!r}")

    if value < 0:
        raise ValueError(f"Raw amount cannot be negative: {raw}")
    return value


def format_token_amount(raw: int | str, scale: int) -> str:
    """Format raw integer units as an exact decimal string.

    - Whole and fractional part are split with integer ``divmod``

    - Fractional part is zero padded to ``scale`` digits and then trailing zeroes are removed

    :param raw:
        Raw token units as int or a string of decimal digits

    :param scale:
        Token decimals

    :return:
        E.g. ``"0.5"`` or ``"1200"``.

    :raise ValueError:
        Negative or non-numeric input
    """
    value = _parse_raw(raw)

    if type(scale) != int or scale < 0:
        raise ValueError(f"Scale must be a non-negative int, got {scale!r}")

    if value == 0:
        return "0"

    if scale == 0:
        return str(value)

    whole, fraction = divmod(value, 10**scale)
    fraction_str = str(fraction).rjust(scale, "0").rstrip("0")
    if not fraction_str:
        return str(whole)
    return f"{whole}.{fraction_str}"


@dataclass(frozen=True, slots=True)
class Amount:
    """Raw token amount with its decimal scale.

    The canonical representation for any integer we read from the chain,
    so formatting code does not need to care what shape the decoded value had.
    """

    #: Raw units, arbitrary precision
    raw: int

    #: Number of decimals
    scale: int

    def __post_init__(self):
        assert type(self.raw) == int, f"Got {type(self.raw)}: {self.raw}"
        assert self.raw >= 0, f"Negative amount: {self.raw}"
        assert type(self.scale) == int and self.scale >= 0, f"Bad scale: {self.scale}"

    def __str__(self):
        return self.format()

    @staticmethod
    def from_value(value: Any, scale: int) -> "Amount":
        """Build from any shape a decoded uint may come in.

        Accepts

        - Python int

        - String of decimal digits

        - One element tuple or list, as returned by a single return value function decoded as a tuple

        :raise ValueError:
            If the value does not look like an unsigned integer
        """
        if type(value) in (tuple, list):
            if len(value) != 1:
                raise ValueError(f"Expected exactly one value, got {value!r}")
            value = value[0]

        return Amount(raw=_parse_raw(value), scale=scale)

    def format(self) -> str:
        """Human readable exact decimal string.

        See :py:func:`format_token_amount`.
        """
        return format_token_amount(self.raw, self.scale)

    def as_decimal(self) -> Decimal:
        """Exact :py:class:`Decimal` of this amount.

        Built from the formatted string, so no context precision is applied.
        """
        return Decimal(self.format())
