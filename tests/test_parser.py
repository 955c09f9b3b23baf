"""Tests for portal page parsing."""
from conftest import (
    CHANGED_LAYOUT_PAGE,
    HEADERS,
    NO_DATA_PAGE,
    PORTAL_ERROR_PAGE,
    UNKNOWN_ISSUER_PAGE,
    build_page,
)

from short_harvest.models import RawDocument
from short_harvest.sources.parser import CNMV_LAYOUT, PageStatus, parse_page


def _doc(text: str) -> RawDocument:
    return RawDocument(url="https://portal.test/PosicionesCortas.aspx?nif=A1", status_code=200, text=text)


def test_rows_become_fragments_in_source_order():
    page = build_page(
        [
            ("Marshall Wace LLP", "0,85", "12/03/2024"),
            ("Qube Research &amp; Technologies", "0,51", "11/03/2024"),
        ]
    )

    parsed = parse_page(_doc(page))

    assert parsed.status is PageStatus.OK
    assert parsed.error is None
    assert parsed.fragments == (
        {"holder": "Marshall Wace LLP", "position_pct": "0,85", "date": "12/03/2024"},
        {"holder": "Qube Research & Technologies", "position_pct": "0,51", "date": "11/03/2024"},
    )


def test_whitespace_and_entities_are_cleaned():
    page = build_page([("\n  AQR&nbsp;Capital \t Management ", " 0,60 ", "01/02/2024 ")])

    parsed = parse_page(_doc(page))

    assert parsed.fragments[0] == {
        "holder": "AQR Capital Management",
        "position_pct": "0,60",
        "date": "01/02/2024",
    }


def test_header_matching_ignores_case_and_accents():
    headers = ("TITULAR DE LA POSICION", "%  sobre el capital", "fecha de la posicion")
    page = build_page([("FundX", "1,2", "10/01/2024")], headers=headers)

    parsed = parse_page(_doc(page))

    assert parsed.status is PageStatus.OK
    assert parsed.fragments[0]["holder"] == "FundX"


def test_cells_without_data_th_map_by_position():
    page = build_page([("FundX", "1,2", "10/01/2024")], data_th=False)

    parsed = parse_page(_doc(page))

    assert parsed.fragments == ({"holder": "FundX", "position_pct": "1,2", "date": "10/01/2024"},)


def test_missing_cell_yields_partial_fragment():
    page = build_page([("FundX", "1,2")])

    parsed = parse_page(_doc(page))

    assert parsed.status is PageStatus.OK
    assert parsed.fragments == ({"holder": "FundX", "position_pct": "1,2"},)


def test_extra_semantic_column_fails_the_whole_page():
    headers = HEADERS + ("Número de acciones",)
    page = build_page([("FundX", "1,2", "10/01/2024", "1000")], headers=headers)

    parsed = parse_page(_doc(page))

    assert parsed.status is PageStatus.STRUCTURE_ERROR
    assert parsed.fragments == ()
    assert "4 columns" in str(parsed.error)


def test_missing_table_is_a_structure_error():
    parsed = parse_page(_doc(CHANGED_LAYOUT_PAGE))

    assert parsed.status is PageStatus.STRUCTURE_ERROR
    assert parsed.fragments == ()
    assert parsed.error is not None
    assert parsed.error.url.endswith("nif=A1")


def test_empty_results_table_is_ok():
    parsed = parse_page(_doc(build_page([])))

    assert parsed.status is PageStatus.OK
    assert parsed.fragments == ()


def test_no_data_page():
    parsed = parse_page(_doc(NO_DATA_PAGE))

    assert parsed.status is PageStatus.NO_DATA
    assert parsed.ok


def test_unknown_issuer_page():
    parsed = parse_page(_doc(UNKNOWN_ISSUER_PAGE))

    assert parsed.status is PageStatus.UNKNOWN_ISSUER
    assert not parsed.ok


def test_portal_error_page():
    parsed = parse_page(_doc(PORTAL_ERROR_PAGE))

    assert parsed.status is PageStatus.PORTAL_ERROR


def test_layout_matches_printed_headers():
    assert [CNMV_LAYOUT.match_header(header) for header in HEADERS] == ["holder", "position_pct", "date"]
    assert CNMV_LAYOUT.match_header("Número de acciones") is None
