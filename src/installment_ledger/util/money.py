from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional


_WHITESPACE_RE = re.compile(r"\s+")

# Placeholder glyphs banks print in empty amount columns.
_PLACEHOLDERS = {"-", "—", "--"}

CENT = Decimal("0.01")


def _clean_amount_text(value: Optional[str]) -> str:
    s = (value or "").replace("INR", "").replace(",", "")
    return _WHITESPACE_RE.sub("", s)


def is_valid_amount(value: Optional[str]) -> bool:
    """
    True when a statement cell holds something that looks like an amount:
    - "1,500.00"
    - "INR 250.00"
    - " 12 "

    Blank cells and dash placeholders ("-", "—", "--") are not amounts.
    """
    s = _clean_amount_text(value)
    return bool(s) and s not in _PLACEHOLDERS


def parse_amount(value: Optional[str]) -> Decimal:
    """
    Parse a statement/user amount into a Decimal rounded to paise.

    Raises ValueError on blank, placeholder, non-numeric or out-of-range input.
    """
    if value is None:
        raise ValueError("parse_amount: value is None")
    s = _clean_amount_text(value)
    if not s or s in _PLACEHOLDERS:
        raise ValueError(f"parse_amount: not an amount: {value!r}")
    try:
        dec = Decimal(s)
    except InvalidOperation as e:
        raise ValueError(f"parse_amount: not an amount: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"parse_amount: not an amount: {value!r}")
    try:
        return round_money(dec)
    except InvalidOperation as e:
        # quantize() overflows the context precision on absurdly long digit runs.
        raise ValueError(f"parse_amount: amount out of range: {value!r}") from e


def to_decimal(value: object) -> Decimal:
    """
    Convert a store number (float/int/str/Decimal/None) into a Decimal without float noise.
    """
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_rupees(value: Decimal) -> str:
    return f"₹{round_money(value):,.2f}"
