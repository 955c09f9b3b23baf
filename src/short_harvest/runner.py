"""Command line entry point for the short position harvest job."""
from __future__ import annotations

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.engine import Engine

from .config import Settings
from .db import create_db_engine, ensure_schema, load_issuers, upsert_issuers
from .deadline import Deadline
from .errors import FeedError, HarvestCancelled, ProviderError, ProviderErrorKind
from .feeder import Feeder
from .logging_utils import configure_logging
from .models import DateRange, Issuer, SyncReport
from .sources import ShortDataProvider, create_fetcher, create_provider

LOGGER = logging.getLogger(__name__)

JOB_ID = "daily-harvest"


class HarvestState(str, Enum):
    FETCHING = "fetching"
    PARSING = "parsing"
    NORMALIZING = "normalizing"
    DIFFING = "diffing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


# Stage of the provider call a provider error is attributed to.
PROVIDER_FAILURE_STATE = {
    ProviderErrorKind.FETCH: HarvestState.FETCHING,
    ProviderErrorKind.UNKNOWN_ISSUER: HarvestState.FETCHING,
    ProviderErrorKind.STRUCTURE: HarvestState.PARSING,
    ProviderErrorKind.EMPTY: HarvestState.NORMALIZING,
}


@dataclass(frozen=True)
class HarvestOutcome:
    """Terminal state of one issuer pipeline."""

    issuer: str
    state: HarvestState
    report: Optional[SyncReport] = None
    error: Optional[str] = None
    failed_in: Optional[HarvestState] = None

    @property
    def ok(self) -> bool:
        return self.state is HarvestState.DONE


def harvest_issuer(
    issuer: Issuer,
    provider: ShortDataProvider,
    feeder: Feeder,
    date_range: Optional[DateRange] = None,
    deadline: Optional[Deadline] = None,
) -> HarvestOutcome:
    """Run fetch, parse, normalize, diff and commit for one issuer.

    Provider, feed and cancellation errors end the pipeline in ``FAILED`` and are
    reported in the outcome instead of being raised.
    """

    state = HarvestState.FETCHING

    def failed(reason: str) -> HarvestOutcome:
        return HarvestOutcome(issuer=issuer.ticker, state=HarvestState.FAILED, error=reason, failed_in=state)

    try:
        # Fetching covers parsing and normalizing, which happen page by page.
        batch = provider.positions_for(issuer, date_range, deadline=deadline)
        state = HarvestState.DIFFING
        LOGGER.debug("%s: %s %d positions", issuer.ticker, state.value, len(batch))
        state = HarvestState.COMMITTING
        report = feeder.sync(issuer.ticker, batch, deadline=deadline)
    except HarvestCancelled as exc:
        LOGGER.warning("Harvest of %s cancelled while %s: %s", issuer.ticker, state.value, exc)
        return failed("cancelled")
    except ProviderError as exc:
        LOGGER.error(
            "Provider failed for %s after %d page(s): %s",
            issuer.ticker,
            exc.pages_attempted,
            exc,
        )
        state = PROVIDER_FAILURE_STATE.get(exc.kind, state)
        return failed(str(exc))
    except FeedError as exc:
        LOGGER.error("Could not persist %s: %s", issuer.ticker, exc)
        return failed(str(exc))
    return HarvestOutcome(issuer=issuer.ticker, state=HarvestState.DONE, report=report)


def resolve_issuers(settings: Settings, engine: Engine, tickers: Sequence[str] = ()) -> List[Issuer]:
    """Seed the configured issuers and return the listing to harvest."""

    upsert_issuers(engine, settings.issuers)
    listing = load_issuers(engine)
    if tickers:
        wanted = {ticker.upper() for ticker in tickers}
        listing = [issuer for issuer in listing if issuer.ticker in wanted]
        missing = wanted - {issuer.ticker for issuer in listing}
        if missing:
            LOGGER.warning("Unknown tickers requested: %s", ", ".join(sorted(missing)))
    return listing


def run_harvest(
    settings: Settings,
    tickers: Sequence[str] = (),
    date_range: Optional[DateRange] = None,
) -> List[HarvestOutcome]:
    """Harvest every configured issuer, in parallel up to ``max_workers``."""

    engine = create_db_engine(settings.database_url)
    try:
        ensure_schema(engine)
        listing = resolve_issuers(settings, engine, tickers)
        feeder = Feeder(engine)

        outcomes: List[HarvestOutcome] = []
        with create_fetcher(settings) as fetcher:

            def _run(issuer: Issuer) -> HarvestOutcome:
                try:
                    provider = create_provider(issuer.regulator, fetcher, settings)
                    deadline = Deadline.after(settings.sync_timeout)
                    return harvest_issuer(issuer, provider, feeder, date_range, deadline)
                except Exception as exc:  # pragma: no cover
                    LOGGER.exception("Unexpected failure harvesting %s", issuer.ticker)
                    return HarvestOutcome(issuer=issuer.ticker, state=HarvestState.FAILED, error=str(exc))

            with ThreadPoolExecutor(max_workers=max(1, settings.max_workers)) as executor:
                outcomes.extend(executor.map(_run, listing))
    finally:
        engine.dispose()

    failures = [outcome for outcome in outcomes if not outcome.ok]
    LOGGER.info("Harvest finished: %d issuer(s) synced, %d failed", len(outcomes) - len(failures), len(failures))
    return outcomes


def schedule_daily(settings: Settings, tickers: Sequence[str] = ()) -> BlockingScheduler:
    """Build a scheduler running the harvest every day at the configured time."""

    hour, minute = settings.schedule
    scheduler = BlockingScheduler(timezone=ZoneInfo(settings.timezone))

    def _harvest_job() -> None:
        LOGGER.info("Running scheduled harvest")
        try:
            run_harvest(settings, tickers)
        except Exception:  # pragma: no cover
            LOGGER.exception("Scheduled harvest run failed")
        else:
            LOGGER.info("Scheduled harvest completed")

    trigger = CronTrigger(hour=hour, minute=minute, timezone=ZoneInfo(settings.timezone))
    scheduler.add_job(_harvest_job, trigger=trigger, id=JOB_ID, replace_existing=True)
    LOGGER.info("Scheduled daily harvest for %02d:%02d %s", hour, minute, settings.timezone)
    return scheduler


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value}") from exc


def parse_args(args: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging output",
    )
    parser.add_argument(
        "--issuer",
        action="append",
        default=[],
        metavar="TICKER",
        help="Only harvest the given ticker (repeatable)",
    )
    parser.add_argument("--since", type=_iso_date, help="Earliest disclosure date to keep (YYYY-MM-DD)")
    parser.add_argument("--until", type=_iso_date, help="Latest disclosure date to keep (YYYY-MM-DD)")
    parser.add_argument(
        "--daily",
        action="store_true",
        help="Stay in the foreground and harvest every day at the configured time",
    )
    options = parser.parse_args(args=args)
    if options.since and options.until and options.since > options.until:
        parser.error("--since must not be after --until")
    return options


def main(argv: Iterable[str] | None = None) -> int:
    options = parse_args(argv)
    configure_logging(logging.DEBUG if options.verbose else None, force=options.verbose)
    settings = Settings.load()

    if options.daily:
        scheduler = schedule_daily(settings, options.issuer)
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            LOGGER.info("Scheduler shut down")
        return 0

    date_range = DateRange(options.since, options.until)
    outcomes = run_harvest(settings, options.issuer, date_range)
    return 1 if any(not outcome.ok for outcome in outcomes) else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
