"""CNMV (Comisión Nacional del Mercado de Valores) short position provider."""
from __future__ import annotations

import logging
from typing import Optional

from ..config import DEFAULT_BASE_URL
from ..deadline import Deadline, check_deadline
from ..errors import FetchError, ProviderError, ProviderErrorKind, RowError
from ..models import DateRange, HarvestBatch, Issuer, NaturalKey, ShortPosition
from .base import ShortDataProvider
from .fetcher import HtmlFetcher
from .normalizer import fragment_hash, normalize_fragments
from .parser import CNMV_LAYOUT, PageStatus, TableLayout, parse_page

LOGGER = logging.getLogger(__name__)

DEFAULT_URL = DEFAULT_BASE_URL


class CnmvProvider(ShortDataProvider):
    """Scraper for the CNMV register of net short positions.

    The portal keys issuers by their NIF, so issuers without one cannot be
    queried. Result pages are walked until the portal stops returning new rows or
    ``max_pages`` is reached. A batch cut off by ``max_pages`` is marked
    ``truncated`` and is not a snapshot.

    The per-page error rate is checked before the batch-wide valid row count. A
    page whose rows all fail therefore aborts with ``STRUCTURE`` unless
    ``error_threshold`` is 1.0, and ``EMPTY`` is only reported when every page
    stayed within the threshold yet no row was valid.
    """

    regulator = "cnmv"

    def __init__(
        self,
        fetcher: HtmlFetcher,
        *,
        url: str = DEFAULT_URL,
        max_pages: int = 20,
        error_threshold: float = 0.5,
        layout: TableLayout = CNMV_LAYOUT,
    ) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        if not 0.0 <= error_threshold <= 1.0:
            raise ValueError("error_threshold must lie in [0, 1]")
        self.fetcher = fetcher
        self.url = url
        self.max_pages = max_pages
        self.error_threshold = error_threshold
        self.layout = layout

    def positions_for(
        self,
        issuer: Issuer,
        date_range: Optional[DateRange] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> HarvestBatch:
        date_range = date_range or DateRange()
        if not issuer.nif:
            raise ProviderError(
                ProviderErrorKind.UNKNOWN_ISSUER,
                f"{issuer} has no NIF, the CNMV register cannot be queried",
            )

        collected: dict[NaturalKey, ShortPosition] = {}
        row_errors: list[RowError] = []
        seen_hashes: set[str] = set()
        fragments_seen = 0
        valid_seen = 0
        pages = 0
        truncated = False

        for page in range(1, self.max_pages + 1):
            check_deadline(deadline, f"page {page} of {issuer.ticker}")
            pages = page
            LOGGER.debug("Fetching page %d for %s", page, issuer.ticker)
            params = {"nif": issuer.nif}
            if page > 1:
                params["page"] = str(page)
            try:
                document = self.fetcher.fetch(self.url, params, deadline=deadline)
            except FetchError as exc:
                raise ProviderError(
                    ProviderErrorKind.FETCH,
                    str(exc),
                    pages_attempted=pages,
                    skipped_rows=len(row_errors),
                ) from exc

            LOGGER.debug("Parsing page %d for %s", page, issuer.ticker)
            parsed = parse_page(document, self.layout)
            if parsed.status is PageStatus.STRUCTURE_ERROR:
                raise ProviderError(
                    ProviderErrorKind.STRUCTURE,
                    str(parsed.error),
                    pages_attempted=pages,
                    skipped_rows=len(row_errors),
                ) from parsed.error
            if parsed.status is PageStatus.UNKNOWN_ISSUER:
                raise ProviderError(
                    ProviderErrorKind.UNKNOWN_ISSUER,
                    f"CNMV does not recognise {issuer} (NIF {issuer.nif})",
                    pages_attempted=pages,
                )
            if parsed.status is PageStatus.PORTAL_ERROR:
                raise ProviderError(
                    ProviderErrorKind.FETCH,
                    f"CNMV could not complete the query for {issuer}",
                    pages_attempted=pages,
                    skipped_rows=len(row_errors),
                )
            if parsed.status is PageStatus.NO_DATA or not parsed.fragments:
                LOGGER.debug("Page %d for %s holds no rows", page, issuer.ticker)
                break

            hashes = [fragment_hash(fragment) for fragment in parsed.fragments]
            if page > 1 and seen_hashes.issuperset(hashes):
                LOGGER.debug("Page %d for %s repeats known rows, stopping", page, issuer.ticker)
                break
            seen_hashes.update(hashes)

            LOGGER.debug("Normalizing %d rows from page %d", len(parsed.fragments), page)
            positions, errors = normalize_fragments(parsed.fragments, issuer.ticker)
            fragments_seen += len(parsed.fragments)
            valid_seen += len(positions)
            row_errors.extend(errors)

            error_rate = len(errors) / len(parsed.fragments)
            if error_rate > self.error_threshold:
                raise ProviderError(
                    ProviderErrorKind.STRUCTURE,
                    f"{len(errors)} of {len(parsed.fragments)} rows on page {page} failed normalization; "
                    "the portal layout has likely changed",
                    pages_attempted=pages,
                    skipped_rows=len(row_errors),
                )

            for position in positions:
                if date_range.contains(position.date):
                    # Last parsed wins for a repeated natural key.
                    collected[position.key] = position
        else:
            LOGGER.warning(
                "Stopped paging %s after the %d page safety bound",
                issuer.ticker,
                self.max_pages,
            )
            truncated = True

        if fragments_seen and not valid_seen:
            raise ProviderError(
                ProviderErrorKind.EMPTY,
                f"{fragments_seen} rows found for {issuer} but none could be normalized",
                pages_attempted=pages,
                skipped_rows=len(row_errors),
            )

        batch = HarvestBatch(
            issuer=issuer.ticker,
            positions=tuple(collected.values()),
            row_errors=tuple(row_errors),
            pages_attempted=pages,
            date_range=date_range,
            truncated=truncated,
        )
        LOGGER.info(
            "Harvested %d positions for %s over %d page(s), %d row(s) skipped",
            len(batch),
            issuer.ticker,
            batch.pages_attempted,
            batch.skipped_rows,
        )
        return batch


__all__ = ["CnmvProvider", "DEFAULT_URL"]
