"""Extraction of raw table rows from portal pages."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..errors import StructureError
from ..models import RawDocument, RawFragment
from .utils import clean_text, fold_label

LOGGER = logging.getLogger(__name__)

PORTAL_ERROR_MARKER = "No ha sido posible completar su consulta"
NO_DATA_MARKER = "No se han encontrado datos disponibles"
HISTORIC_MARKER = "Serie histórica"
ISIN_PATTERN = re.compile(r"ES\d{10}")


@dataclass(frozen=True)
class TableLayout:
    """Pinned column layout of the results table.

    ``columns`` maps each canonical column label to the header text printed by the
    portal. A page whose table has a different number of headers is rejected.
    """

    columns: Mapping[str, str]
    version: str = "1"

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(self.columns)

    def match_header(self, header: str) -> Optional[str]:
        folded = fold_label(header)
        for label, printed in self.columns.items():
            if fold_label(printed) == folded:
                return label
        return None


CNMV_LAYOUT = TableLayout(
    columns={
        "holder": "Titular de la posición",
        "position_pct": "% sobre el capital",
        "date": "Fecha de la posición",
    },
    version="2025-01",
)


class PageStatus(str, Enum):
    OK = "ok"
    NO_DATA = "no_data"
    UNKNOWN_ISSUER = "unknown_issuer"
    PORTAL_ERROR = "portal_error"
    STRUCTURE_ERROR = "structure_error"


@dataclass(frozen=True)
class ParsedPage:
    """Rows found on one page plus a diagnostic of the page state."""

    status: PageStatus
    fragments: tuple[RawFragment, ...] = ()
    error: Optional[StructureError] = None
    headers: tuple[str, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return self.status in (PageStatus.OK, PageStatus.NO_DATA)


def parse_page(document: RawDocument, layout: TableLayout = CNMV_LAYOUT) -> ParsedPage:
    """Split a portal page into raw fragments, one per table row."""

    soup = BeautifulSoup(document.text, "html.parser")
    page_text = clean_text(soup.get_text(" "))

    table, headers = _locate_table(soup, layout)
    if table is None:
        return _classify_tableless(document, page_text)

    if len(headers) != len(layout.columns):
        error = StructureError(
            f"Results table has {len(headers)} columns, layout {layout.version} expects {len(layout.columns)}",
            document.url,
        )
        LOGGER.error("%s", error)
        return ParsedPage(status=PageStatus.STRUCTURE_ERROR, error=error, headers=tuple(headers))

    column_labels = [layout.match_header(header) for header in headers]
    fragments = []
    for row in table.find_all("tr"):
        cells = row.find_all("td")
        if not cells:
            continue
        fragments.append(_row_to_fragment(cells, column_labels, layout))

    LOGGER.debug("Parsed %d rows from %s", len(fragments), document.url)
    return ParsedPage(status=PageStatus.OK, fragments=tuple(fragments), headers=tuple(headers))


def _locate_table(soup: BeautifulSoup, layout: TableLayout) -> tuple[Optional[Tag], list[str]]:
    wanted = set(layout.labels)
    for table in soup.find_all("table"):
        headers = _header_row(table)
        matched = {layout.match_header(header) for header in headers}
        if wanted <= matched:
            return table, headers
    return None, []


def _header_row(table: Tag) -> list[str]:
    for row in table.find_all("tr"):
        cells = row.find_all("th")
        if cells:
            return [clean_text(th.get_text(" ")) for th in cells]
    return []


def _row_to_fragment(cells: list[Tag], column_labels: list[Optional[str]], layout: TableLayout) -> RawFragment:
    values: dict[str, str] = {}
    for index, cell in enumerate(cells):
        label = None
        data_th = cell.get("data-th")
        if data_th:
            label = layout.match_header(data_th)
        if label is None and index < len(column_labels):
            label = column_labels[index]
        if label is None or label in values:
            continue
        values[label] = clean_text(cell.get_text(" "))
    # Re-order to the layout so that fingerprints do not depend on markup order.
    return {label: values[label] for label in layout.labels if label in values}


def _classify_tableless(document: RawDocument, page_text: str) -> ParsedPage:
    if PORTAL_ERROR_MARKER in page_text:
        LOGGER.warning("Portal could not complete the query for %s", document.url)
        return ParsedPage(status=PageStatus.PORTAL_ERROR)
    if NO_DATA_MARKER in page_text:
        if HISTORIC_MARKER in page_text or ISIN_PATTERN.search(page_text):
            return ParsedPage(status=PageStatus.NO_DATA)
        LOGGER.warning("Portal does not recognise the issuer queried by %s", document.url)
        return ParsedPage(status=PageStatus.UNKNOWN_ISSUER)
    error = StructureError("Results table not found", document.url)
    LOGGER.error("%s", error)
    return ParsedPage(status=PageStatus.STRUCTURE_ERROR, error=error)


__all__ = [
    "TableLayout",
    "CNMV_LAYOUT",
    "PageStatus",
    "ParsedPage",
    "parse_page",
]
