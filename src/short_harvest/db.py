"""Database integration utilities."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from .models import Issuer, ShortPosition


metadata = MetaData()

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


issuers = Table(
    "issuers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticker", String(32), nullable=False, unique=True),
    Column("nif", String(32), nullable=True),
    Column("isin", String(12), nullable=True),
    Column("name", String(255), nullable=True),
    Column("regulator", String(32), nullable=False, default="cnmv"),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
    Column("updated_at", DateTime, nullable=False, default=_utcnow, onupdate=_utcnow),
)

short_positions = Table(
    "short_positions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("issuer", String(32), nullable=False),
    Column("holder", String(255), nullable=False),
    Column("date", Date, nullable=False),
    Column("position_pct", Numeric(9, 4, asdecimal=True), nullable=False),
    Column("source_row_hash", String(64), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
    Column("updated_at", DateTime, nullable=False, default=_utcnow, onupdate=_utcnow),
    UniqueConstraint("issuer", "holder", "date", name="uq_short_positions_key"),
)


@dataclass(frozen=True, slots=True)
class StoredPosition:
    """Projection of a persisted row used for diffing."""

    position_pct: Decimal
    active: bool


def create_db_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine."""

    LOGGER.debug("Creating database engine")
    return create_engine(database_url, future=True, pool_pre_ping=True)


@contextmanager
def session(engine: Engine) -> Iterator[Connection]:
    """Provide a transactional scope around a series of operations."""

    with engine.begin() as conn:
        yield conn


def ensure_schema(engine: Engine) -> None:
    """Create tables if they do not exist."""

    LOGGER.debug("Ensuring database schema is present")
    metadata.create_all(engine)


def _insert(conn: Connection, table: Table):
    """Dialect specific INSERT supporting ON CONFLICT clauses."""

    if conn.dialect.name == "sqlite":
        return sqlite_insert(table)
    return pg_insert(table)


def upsert_issuers(engine: Engine, listing: Iterable[Issuer]) -> int:
    """Register issuers, refreshing identifiers of known tickers."""

    count = 0
    with session(engine) as conn:
        for issuer in listing:
            stmt = _insert(conn, issuers).values(
                ticker=issuer.ticker,
                nif=issuer.nif,
                isin=issuer.isin,
                name=issuer.name,
                regulator=issuer.regulator,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[issuers.c.ticker],
                set_={
                    "nif": stmt.excluded.nif,
                    "isin": stmt.excluded.isin,
                    "name": stmt.excluded.name,
                    "regulator": stmt.excluded.regulator,
                    "updated_at": _utcnow(),
                },
            )
            conn.execute(stmt)
            count += 1
    LOGGER.info("Registered %d issuers", count)
    return count


def load_issuers(engine: Engine) -> list[Issuer]:
    """Return the issuer listing ordered by ticker."""

    with engine.connect() as conn:
        rows = conn.execute(select(issuers).order_by(issuers.c.ticker)).all()
    return [
        Issuer(
            ticker=row.ticker,
            nif=row.nif,
            isin=row.isin,
            name=row.name,
            regulator=row.regulator,
        )
        for row in rows
    ]


def fetch_projection(conn: Connection, issuer: str) -> dict[tuple[str, date], StoredPosition]:
    """Load ``(holder, date) -> (position_pct, active)`` for one issuer."""

    stmt = select(
        short_positions.c.holder,
        short_positions.c.date,
        short_positions.c.position_pct,
        short_positions.c.active,
    ).where(short_positions.c.issuer == issuer)
    return {
        (row.holder, row.date): StoredPosition(position_pct=Decimal(row.position_pct), active=bool(row.active))
        for row in conn.execute(stmt)
    }


def upsert_positions(conn: Connection, positions: Iterable[ShortPosition]) -> int:
    """Insert or refresh positions keyed by ``(issuer, holder, date)``."""

    written = 0
    for position in positions:
        now = _utcnow()
        stmt = _insert(conn, short_positions).values(
            issuer=position.issuer,
            holder=position.holder,
            date=position.date,
            position_pct=position.position_pct,
            source_row_hash=position.source_row_hash,
            active=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[short_positions.c.issuer, short_positions.c.holder, short_positions.c.date],
            set_={
                "position_pct": stmt.excluded.position_pct,
                "source_row_hash": stmt.excluded.source_row_hash,
                "active": True,
                "updated_at": now,
            },
        )
        conn.execute(stmt)
        written += 1
    return written


def retire_positions(conn: Connection, issuer: str, keys: Iterable[tuple[str, date]]) -> int:
    """Flag positions that are no longer disclosed. Rows are kept for history."""

    retired = 0
    for holder, disclosed in keys:
        stmt = (
            update(short_positions)
            .where(
                short_positions.c.issuer == issuer,
                short_positions.c.holder == holder,
                short_positions.c.date == disclosed,
                short_positions.c.active.is_(True),
            )
            .values(active=False, updated_at=_utcnow())
        )
        retired += conn.execute(stmt).rowcount
    return retired


def fetch_positions_view(engine: Engine, issuer: Optional[str] = None, *, active_only: bool = False) -> list[dict[str, object]]:
    """Return stored positions for presentation."""

    LOGGER.debug("Loading positions view data")
    stmt = select(
        short_positions.c.issuer,
        short_positions.c.holder,
        short_positions.c.date,
        short_positions.c.position_pct,
        short_positions.c.active,
        short_positions.c.updated_at,
    ).order_by(short_positions.c.issuer, short_positions.c.date.desc(), short_positions.c.holder)
    if issuer is not None:
        stmt = stmt.where(short_positions.c.issuer == issuer)
    if active_only:
        stmt = stmt.where(short_positions.c.active.is_(True))
    with engine.connect() as conn:
        rows = conn.execute(stmt).all()
    return [dict(row._mapping) for row in rows]


__all__ = [
    "create_db_engine",
    "session",
    "ensure_schema",
    "metadata",
    "issuers",
    "short_positions",
    "StoredPosition",
    "upsert_issuers",
    "load_issuers",
    "fetch_projection",
    "upsert_positions",
    "retire_positions",
    "fetch_positions_view",
]
