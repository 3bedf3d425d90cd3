from datetime import datetime, timezone

from leadsync.domain.columns import DEFAULT_HEADERS, build_column_mapping
from leadsync.domain.periods import (
    find_month_sheet,
    is_terminal_status,
    monthly_sheet_name,
    monthly_sheets_newest_first,
    parse_monthly_title,
    previous_monthly_sheet,
    rollover_rows,
)


def test_monthly_sheet_name_uses_local_month():
    assert monthly_sheet_name(datetime(2026, 10, 16, 12, tzinfo=timezone.utc)) == "Outubro-26"
    # 01:00 UTC on Nov 1st is still October in Sao Paulo
    assert monthly_sheet_name(datetime(2026, 11, 1, 1, tzinfo=timezone.utc)) == "Outubro-26"
    assert monthly_sheet_name(datetime(2027, 3, 10, 12, tzinfo=timezone.utc)) == "Março-27"


def test_parse_monthly_title_variants():
    assert parse_monthly_title("Março-26") == (2026, 3)
    assert parse_monthly_title("marco 2026") == (2026, 3)
    assert parse_monthly_title("FEVEREIRO-26") == (2026, 2)
    assert parse_monthly_title("Leads") is None
    assert parse_monthly_title("Outubro") is None


def test_month_sheet_lookup_and_ordering():
    titles = ["Leads", "Setembro-26", "Outubro-26", "Dezembro-25"]
    assert find_month_sheet(titles, 2026, 10) == "Outubro-26"
    assert find_month_sheet(titles, 2026, 11) is None
    assert monthly_sheets_newest_first(titles) == ["Outubro-26", "Setembro-26", "Dezembro-25"]
    assert previous_monthly_sheet(titles, 2026, 11) == "Outubro-26"
    assert previous_monthly_sheet(titles, 2026, 1) == "Dezembro-25"
    assert previous_monthly_sheet(titles, 2025, 12) is None


def test_terminal_statuses():
    assert is_terminal_status("Contato Finalizado") is True
    assert is_terminal_status("Venda Realizada") is True
    assert is_terminal_status("Comprou (Kommo)") is True
    assert is_terminal_status("Perdido") is True
    assert is_terminal_status("Fez Contato") is False
    assert is_terminal_status("") is False


def _row(name, status, *, day="ok", comment="nota", close="", value=""):
    return [name, "(11)99208-3378", "WhatsApp", "01/09/2026", close, value, "", status, day, day, day, "", "", comment]


def test_rollover_carries_only_active_rows_and_clears_month_fields():
    mapping = build_column_mapping(DEFAULT_HEADERS)
    rows = [
        _row("Ana", "Lead Gerado"),
        _row("Bruno", "Venda Realizada", close="20/09/2026", value="R$ 900,00"),
        _row("Carla", "Fez Contato"),
        [],
        _row("Davi", "Contato Finalizado"),
        _row("Eva", "Em negociação")[:8],
    ]

    carried = rollover_rows(rows, mapping)

    assert [row[0] for row in carried] == ["Ana", "Carla", "Eva"]
    for row in carried:
        assert len(row) == 14
        assert row[8:13] == ["", "", "", "", ""]
        assert row[13] == ""
        assert row[4] == ""
        assert row[5] == ""
    assert carried[0][1] == "(11)99208-3378"
    assert carried[0][7] == "Lead Gerado"
    assert carried[2][7] == "Em negociação"
