from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from leadsync.domain.classification import fold_text
from leadsync.domain.columns import DAY_FIELDS, ColumnMapping
from leadsync.domain.formatting import DEFAULT_TIMEZONE, to_local


MONTH_NAMES = (
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
)
TERMINAL_STATUS_MARKERS = ("contato finalizado", "venda", "comprou", "desqualificado", "perdido")
ROLLOVER_CLEARED_FIELDS = DAY_FIELDS + ("comentarios", "dataFechamento", "valor")


def _compact(value: str) -> str:
    return fold_text(value).replace(" ", "")


def monthly_sheet_name(moment: datetime, tz_name: str = DEFAULT_TIMEZONE) -> str:
    local = to_local(moment, tz_name)
    return f"{MONTH_NAMES[local.month - 1]}-{local.strftime('%y')}"


def parse_monthly_title(title: str) -> tuple[int, int] | None:
    """Return (year, month) for titles like "Fevereiro-26" or "fevereiro 26"."""
    compact = _compact(title)
    for month_idx, name in enumerate(MONTH_NAMES, start=1):
        month = _compact(name)
        if not compact.startswith(month):
            continue
        digits = "".join(ch for ch in compact[len(month):] if ch.isdigit())
        if len(digits) == 2:
            return 2000 + int(digits), month_idx
        if len(digits) == 4:
            return int(digits), month_idx
    return None


def find_month_sheet(titles: Iterable[str], year: int, month: int) -> str | None:
    for title in titles:
        if parse_monthly_title(title) == (year, month):
            return title
    return None


def monthly_sheets_newest_first(titles: Iterable[str]) -> list[str]:
    dated = [(parse_monthly_title(title), title) for title in titles]
    ordered = sorted(
        ((period, title) for period, title in dated if period is not None),
        key=lambda item: item[0][0] * 12 + item[0][1],
        reverse=True,
    )
    return [title for _, title in ordered]


def previous_monthly_sheet(titles: Iterable[str], year: int, month: int) -> str | None:
    current = year * 12 + month
    for title in monthly_sheets_newest_first(titles):
        period = parse_monthly_title(title)
        if period and period[0] * 12 + period[1] < current:
            return title
    return None


def is_terminal_status(status: str | None) -> bool:
    folded = fold_text(status)
    return any(fold_text(marker) in folded for marker in TERMINAL_STATUS_MARKERS)


def rollover_rows(rows: Sequence[Sequence[str]], mapping: ColumnMapping) -> list[list[str]]:
    """Rows (header excluded) that carry over into a new month, with per-month fields cleared."""
    carried: list[list[str]] = []
    cleared = [mapping.index(name) for name in ROLLOVER_CLEARED_FIELDS if mapping.has(name)]
    for row in rows:
        if not any(str(cell).strip() for cell in row):
            continue
        if is_terminal_status(mapping.cell(row, "status")):
            continue
        copied = [str(cell) for cell in row] + [""] * max(0, mapping.total_columns - len(row))
        for idx in cleared:
            copied[idx] = ""
        carried.append(copied)
    return carried
