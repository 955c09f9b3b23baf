"""Utility helpers for scraping."""
from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from dateutil import parser


WHITESPACE = re.compile(r"\s+")
NUMBER = re.compile(r"^[+-]?[0-9.,]+$")
DATE_FORMATS = ("%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y", "%d.%m.%Y")
# dateutil fills missing parts from its default; a date that differs between
# these two defaults was not fully written out.
FILL_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


def clean_text(value: str | None) -> str:
    """Normalize unicode artifacts and collapse whitespace."""

    if not value:
        return ""
    value = unicodedata.normalize("NFKC", value).replace("\u200b", "")
    return WHITESPACE.sub(" ", value).strip()


def fold_label(value: str | None) -> str:
    """Case and accent insensitive form of a column header."""

    decomposed = unicodedata.normalize("NFKD", clean_text(value))
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return stripped.casefold()


def parse_decimal(value: str | None) -> Optional[Decimal]:
    """Parse a European or English formatted percentage into a Decimal.

    ``4,50``, ``4.5``, ``4.5 %`` and ``1.234,5`` are all accepted. When both separators
    appear the right-most one is the decimal mark.
    """

    cleaned = clean_text(value).replace("%", "").replace(" ", "")
    if not cleaned or not NUMBER.match(cleaned):
        return None
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        if cleaned.count(",") > 1:
            return None
        cleaned = cleaned.replace(",", ".")
    elif cleaned.count(".") > 1:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def format_decimal(value: Decimal) -> str:
    """Render a Decimal the way the portal prints it (decimal comma)."""

    text = format(value, "f")
    return text.replace(".", ",")


def parse_date(value: str | None) -> Optional[date]:
    """Parse a disclosure date, day first.

    Returns ``None`` unless day, month and year are all present in ``value``.
    """

    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    if not any(char.isdigit() for char in cleaned):
        return None
    try:
        first, second = (parser.parse(cleaned, dayfirst=True, default=default) for default in FILL_DEFAULTS)
    except (parser.ParserError, ValueError, OverflowError):
        return None
    if first.date() != second.date():
        return None
    return first.date()


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


__all__ = [
    "clean_text",
    "fold_label",
    "parse_decimal",
    "format_decimal",
    "parse_date",
    "format_date",
]
