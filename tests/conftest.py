"""Shared fixtures: fake portal pages, a fake fetcher and a SQLite store."""
from __future__ import annotations

from typing import Sequence

import pytest

from short_harvest.db import create_db_engine, ensure_schema
from short_harvest.models import Issuer, RawDocument

HEADERS = ("Titular de la posición", "% sobre el capital", "Fecha de la posición")

NO_DATA_PAGE = """
<html><body>
  <h1>Notificaciones de posiciones cortas</h1>
  <p>ISIN: ES0171996087</p>
  <p>No se han encontrado datos disponibles</p>
  <h2>Serie histórica</h2>
</body></html>
"""

UNKNOWN_ISSUER_PAGE = """
<html><body><p>No se han encontrado datos disponibles</p></body></html>
"""

PORTAL_ERROR_PAGE = """
<html><body><div class="error">No ha sido posible completar su consulta</div></body></html>
"""

CHANGED_LAYOUT_PAGE = """
<html><body><div id="posiciones"><p>Contenido en mantenimiento</p></div></body></html>
"""


def build_page(rows: Sequence[Sequence[str]], headers: Sequence[str] = HEADERS, data_th: bool = True) -> str:
    """Render a results page shaped like the CNMV short position register."""

    head = "".join(f"<th>{header}</th>" for header in headers)
    body = []
    for row in rows:
        cells = []
        for index, value in enumerate(row):
            css = ' class="Izquierda"' if index == 0 else ""
            label = f' data-th="{headers[index]}"' if data_th and index < len(headers) else ""
            cells.append(f"<td{css}{label}>{value}</td>")
        body.append(f"<tr>{''.join(cells)}</tr>")
    return f"""
<html><body>
  <table class="menu"><tr><td>Inicio</td><td>Consultas</td></tr></table>
  <p>ISIN: ES0171996087</p>
  <table class="TablaDatos">
    <thead><tr>{head}</tr></thead>
    <tbody>{''.join(body)}</tbody>
  </table>
</body></html>
"""


class FakeFetcher:
    """Serves one canned page per ``page`` parameter, then the no-data page."""

    def __init__(self, pages: Sequence[object] = ()) -> None:
        self.pages = list(pages)
        self.calls: list[dict] = []

    def fetch(self, url, params=None, *, method="GET", deadline=None):
        params = dict(params or {})
        self.calls.append(params)
        page = int(params.get("page", 1))
        content = self.pages[page - 1] if page <= len(self.pages) else NO_DATA_PAGE
        if isinstance(content, Exception):
            raise content
        return RawDocument(url=url, status_code=200, text=content)


@pytest.fixture
def issuer() -> Issuer:
    return Issuer(ticker="IssuerA", nif="A00000001", name="Issuer A")


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'store.db'}")
    ensure_schema(engine)
    yield engine
    engine.dispose()
