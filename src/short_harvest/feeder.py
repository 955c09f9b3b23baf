"""Incremental loading of harvested batches into the store."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .deadline import Deadline, check_deadline
from .errors import FeedError, FeedErrorKind
from .models import HarvestBatch, ShortPosition, SyncReport
from .sources.utils import clean_text

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncDelta:
    """Disjoint partition of a batch against the persisted projection."""

    inserts: tuple[ShortPosition, ...] = ()
    updates: tuple[ShortPosition, ...] = ()
    unchanged: tuple[ShortPosition, ...] = ()
    retire: tuple[tuple[str, date], ...] = ()

    @property
    def writes(self) -> tuple[ShortPosition, ...]:
        return self.inserts + self.updates


def _unresolved_holders(batch: HarvestBatch) -> Optional[set[str]]:
    """Holders named by rows that failed normalization, or None if a failed row names none."""

    holders: set[str] = set()
    for error in batch.row_errors:
        holder = clean_text(error.fragment.get("holder"))
        if not holder:
            return None
        holders.add(holder)
    return holders


def compute_delta(
    batch: HarvestBatch,
    projection: Mapping[tuple[str, date], db.StoredPosition],
) -> SyncDelta:
    """Split ``batch`` into inserts, updates and unchanged rows.

    A stored row that was retired and shows up again counts as an update. When the
    batch is a snapshot, stored rows still flagged active but missing from the
    batch are scheduled for retirement. Holders of rows that failed normalization
    keep their positions, and a failed row without a holder blocks retirement.
    """

    inserts: list[ShortPosition] = []
    updates: list[ShortPosition] = []
    unchanged: list[ShortPosition] = []
    for position in batch:
        stored = projection.get((position.holder, position.date))
        if stored is None:
            inserts.append(position)
        elif stored.position_pct != position.position_pct or not stored.active:
            updates.append(position)
        else:
            unchanged.append(position)

    retire: list[tuple[str, date]] = []
    unresolved = _unresolved_holders(batch)
    if batch.is_snapshot and unresolved is not None:
        harvested = {(position.holder, position.date) for position in batch}
        retire = sorted(
            key
            for key, stored in projection.items()
            if stored.active and key not in harvested and key[0] not in unresolved
        )

    return SyncDelta(tuple(inserts), tuple(updates), tuple(unchanged), tuple(retire))


class Feeder:
    """Persist provider batches, writing only what changed."""

    #: One retry of the whole transaction on failure.
    max_attempts = 2

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def sync(self, issuer: str, batch: HarvestBatch, *, deadline: Optional[Deadline] = None) -> SyncReport:
        """Apply ``batch`` to the store atomically and report what happened."""

        if batch.issuer != issuer:
            raise ValueError(f"Batch for {batch.issuer} cannot be synced as {issuer}")

        last_error: Optional[SQLAlchemyError] = None
        for attempt in range(1, self.max_attempts + 1):
            check_deadline(deadline, f"committing {issuer}")
            try:
                return self._sync_once(issuer, batch, deadline)
            except SQLAlchemyError as exc:
                last_error = exc
                LOGGER.warning(
                    "Sync transaction for %s failed on attempt %d/%d: %s",
                    issuer,
                    attempt,
                    self.max_attempts,
                    exc,
                )
        raise FeedError(
            FeedErrorKind.PERSISTENCE,
            f"could not persist batch for {issuer}: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    def _sync_once(self, issuer: str, batch: HarvestBatch, deadline: Optional[Deadline]) -> SyncReport:
        with db.session(self.engine) as conn:
            projection = db.fetch_projection(conn, issuer)
            delta = compute_delta(batch, projection)
            LOGGER.debug(
                "Delta for %s: %d insert(s), %d update(s), %d unchanged, %d retired",
                issuer,
                len(delta.inserts),
                len(delta.updates),
                len(delta.unchanged),
                len(delta.retire),
            )
            db.upsert_positions(conn, delta.writes)
            retired = db.retire_positions(conn, issuer, delta.retire)
            # Leaving the block commits; an expired deadline rolls everything back.
            check_deadline(deadline, f"committing {issuer}")

        report = SyncReport(
            issuer=issuer,
            inserted=len(delta.inserts),
            updated=len(delta.updates),
            unchanged=len(delta.unchanged),
            retired=retired,
            skipped_rows=batch.skipped_rows,
        )
        log = LOGGER.warning if report.skipped_rows else LOGGER.info
        log(
            "Synced %s: %d inserted, %d updated, %d unchanged, %d retired, %d skipped row(s)",
            issuer,
            report.inserted,
            report.updated,
            report.unchanged,
            report.retired,
            report.skipped_rows,
        )
        return report


__all__ = ["Feeder", "SyncDelta", "compute_delta"]
