"""Conversion of raw table rows into canonical short positions."""
from __future__ import annotations

import hashlib
import logging
from decimal import Decimal
from typing import Iterable

from ..errors import RowError
from ..models import RawFragment, ShortPosition
from .utils import clean_text, format_date, format_decimal, parse_date, parse_decimal

LOGGER = logging.getLogger(__name__)

MANDATORY_COLUMNS = ("holder", "position_pct", "date")
MAX_PCT = Decimal("100")
# Scale of the store's position_pct column.
MAX_DECIMALS = 4


def fragment_hash(fragment: RawFragment) -> str:
    """Fingerprint of a row, blind to whitespace but not to values."""

    canonical = "\x1f".join(f"{clean_text(label)}={clean_text(value)}" for label, value in fragment.items())
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def normalize(fragment: RawFragment, issuer: str) -> ShortPosition:
    """Build a :class:`ShortPosition` from one row or raise :class:`RowError`."""

    for column in MANDATORY_COLUMNS:
        if not clean_text(fragment.get(column)):
            raise RowError("missing mandatory column", fragment, column)

    holder = clean_text(fragment["holder"])

    pct = parse_decimal(fragment["position_pct"])
    if pct is None or not pct.is_finite():
        raise RowError(f"unparsable percentage {fragment['position_pct']!r}", fragment, "position_pct")
    if pct < 0 or pct > MAX_PCT:
        raise RowError(f"percentage {pct} outside [0, 100]", fragment, "position_pct")
    if pct != pct.quantize(Decimal(1).scaleb(-MAX_DECIMALS)):
        raise RowError(f"percentage {pct} has more than {MAX_DECIMALS} decimals", fragment, "position_pct")

    disclosed = parse_date(fragment["date"])
    if disclosed is None:
        raise RowError(f"unparsable date {fragment['date']!r}", fragment, "date")

    return ShortPosition(
        issuer=issuer,
        holder=holder,
        position_pct=pct,
        date=disclosed,
        source_row_hash=fragment_hash(fragment),
    )


def normalize_fragments(
    fragments: Iterable[RawFragment], issuer: str
) -> tuple[list[ShortPosition], list[RowError]]:
    """Normalize a sequence of rows, collecting per-row failures."""

    positions: list[ShortPosition] = []
    errors: list[RowError] = []
    for fragment in fragments:
        try:
            positions.append(normalize(fragment, issuer))
        except RowError as exc:
            LOGGER.warning("Skipping malformed row for %s: %s", issuer, exc)
            errors.append(exc)
    return positions, errors


def to_fragment(position: ShortPosition) -> dict[str, str]:
    """Render a position back into the portal's text form."""

    return {
        "holder": position.holder,
        "position_pct": format_decimal(position.position_pct),
        "date": format_date(position.date),
    }


__all__ = [
    "MANDATORY_COLUMNS",
    "fragment_hash",
    "normalize",
    "normalize_fragments",
    "to_fragment",
]
