"""Domain models representing short position disclosures."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterator, Mapping, Optional

from .errors import RowError

# Canonical column label -> cleaned cell text, in source column order.
RawFragment = Mapping[str, str]

NaturalKey = tuple[str, str, date]


@dataclass(frozen=True, slots=True)
class Issuer:
    """A listed company whose shares may be shorted."""

    ticker: str
    nif: Optional[str] = None
    isin: Optional[str] = None
    name: Optional[str] = None
    regulator: str = "cnmv"

    def __str__(self) -> str:
        return f"{self.name} ({self.ticker})" if self.name else self.ticker


@dataclass(frozen=True, slots=True)
class RawDocument:
    """Body of one portal response."""

    url: str
    status_code: int
    text: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class ShortPosition:
    """One disclosed net short position."""

    issuer: str
    holder: str
    position_pct: Decimal
    date: date
    source_row_hash: str

    @property
    def key(self) -> NaturalKey:
        return (self.issuer, self.holder, self.date)

    def __str__(self) -> str:
        return f"{self.holder} - {self.position_pct}% ({self.date.isoformat()})"


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive range of disclosure dates. Open ends are unbounded."""

    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self) -> None:
        if self.start and self.end and self.start > self.end:
            raise ValueError(f"Date range start {self.start} is after end {self.end}")

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, value: date) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass(frozen=True, slots=True)
class HarvestBatch:
    """Ordered, deduplicated positions for one issuer from one scrape session."""

    issuer: str
    positions: tuple[ShortPosition, ...] = ()
    row_errors: tuple[RowError, ...] = ()
    pages_attempted: int = 0
    date_range: DateRange = field(default_factory=DateRange)
    #: Paging stopped at the page bound, so later pages were never read.
    truncated: bool = False
    harvested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.positions)

    def __iter__(self) -> Iterator[ShortPosition]:
        return iter(self.positions)

    @property
    def skipped_rows(self) -> int:
        return len(self.row_errors)

    @property
    def total_pct(self) -> Decimal:
        return sum((position.position_pct for position in self.positions), Decimal("0"))

    @property
    def is_snapshot(self) -> bool:
        """True when the batch lists every currently disclosed position."""

        return self.date_range.is_open and not self.truncated


@dataclass(frozen=True, slots=True)
class SyncReport:
    """Outcome of persisting one batch."""

    issuer: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    retired: int = 0
    skipped_rows: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.retired)


__all__ = [
    "RawFragment",
    "NaturalKey",
    "Issuer",
    "RawDocument",
    "ShortPosition",
    "DateRange",
    "HarvestBatch",
    "SyncReport",
]
