from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

from leadsync.domain.columns import DEFAULT_HEADERS, ColumnMapping, build_column_mapping, column_letter
from leadsync.domain.errors import StructuralMismatch, TransientExternalFailure
from leadsync.domain.formatting import DEFAULT_TIMEZONE, phones_match, to_local
from leadsync.domain.periods import (
    find_month_sheet,
    monthly_sheet_name,
    monthly_sheets_newest_first,
    previous_monthly_sheet,
    rollover_rows,
)
from leadsync.models.tenants import Tenant
from leadsync.observability import incr_metric, log_event
from leadsync.providers.sheets.client import RAW_INPUT_OPTION, SheetsClient, SheetsProviderError


@dataclass
class LeadRow:
    name: str
    phone: str
    channel: str
    first_contact_date: str
    status: str
    comment: str
    product: str = ""
    marker: str | None = None

    def cells(self) -> dict[str, str]:
        values = {
            "nome": self.name,
            "telefone": self.phone,
            "origem": self.channel,
            "data": self.first_contact_date,
            "status": self.status,
            "comentarios": self.comment,
        }
        if self.product:
            values["produto"] = self.product
        return values


@dataclass
class LeadUpdate:
    phone: str
    status: str
    comment: str | None = None
    close_date: str | None = None
    sale_value: str | None = None

    def cells(self) -> dict[str, str]:
        values = {"status": self.status}
        if self.comment:
            values["comentarios"] = self.comment
        if self.close_date:
            values["dataFechamento"] = self.close_date
        if self.sale_value:
            values["valor"] = self.sale_value
        return values


@dataclass(frozen=True)
class WriteResult:
    sheet_name: str
    row: int
    fields: tuple[str, ...] = field(default=())
    already_present: bool = False


class LeadSheetStore:
    """Reads and writes lead rows in hand-maintained spreadsheets by header name."""

    def __init__(
        self,
        client: SheetsClient,
        *,
        tz_name: str = DEFAULT_TIMEZONE,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._client = client
        self._tz_name = tz_name
        self._max_attempts = max(1, max_attempts)
        self._clock = clock
        self._lock = Lock()
        self._mappings: dict[tuple[str, str], ColumnMapping] = {}
        self._sheet_ids: dict[str, dict[str, int]] = {}

    # caches

    def invalidate(self, spreadsheet_id: str | None = None) -> None:
        with self._lock:
            if spreadsheet_id is None:
                self._mappings.clear()
                self._sheet_ids.clear()
            else:
                self._sheet_ids.pop(spreadsheet_id, None)
                for key in [key for key in self._mappings if key[0] == spreadsheet_id]:
                    del self._mappings[key]
        self._client.invalidate(spreadsheet_id)
        incr_metric("sheets.cache.invalidated")

    def _worksheets(self, spreadsheet_id: str) -> dict[str, int]:
        with self._lock:
            cached = self._sheet_ids.get(spreadsheet_id)
        if cached is not None:
            return cached
        ids = self._client.worksheet_ids(spreadsheet_id)
        with self._lock:
            self._sheet_ids[spreadsheet_id] = ids
        return ids

    def _remember_sheet(self, spreadsheet_id: str, title: str, sheet_id: int) -> None:
        with self._lock:
            self._sheet_ids.setdefault(spreadsheet_id, {})[title] = sheet_id

    def column_mapping(self, spreadsheet_id: str, title: str) -> ColumnMapping:
        key = (spreadsheet_id, title)
        with self._lock:
            cached = self._mappings.get(key)
        if cached is not None:
            return cached
        mapping = build_column_mapping(self._client.read_row(spreadsheet_id, title, 1))
        missing = mapping.missing_required()
        if missing:
            log_event(
                "sheet_required_columns_missing",
                level=logging.WARNING,
                spreadsheet_id=spreadsheet_id,
                sheet=title,
                missing=missing,
            )
        with self._lock:
            self._mappings[key] = mapping
        return mapping

    # sheet resolution

    def resolve_sheet(self, tenant: Tenant) -> str:
        spreadsheet_id = tenant.spreadsheet_id
        titles = self._worksheets(spreadsheet_id)
        if tenant.sheet_naming_mode == "fixed":
            title = tenant.sheet_name
            if title not in titles:
                self._create_sheet(spreadsheet_id, title, headers=list(DEFAULT_HEADERS), previous=None)
            return title

        local = to_local(self._clock(), self._tz_name)
        existing = find_month_sheet(titles, local.year, local.month)
        if existing:
            return existing
        title = monthly_sheet_name(local, self._tz_name)
        previous = previous_monthly_sheet(titles, local.year, local.month)
        headers = list(DEFAULT_HEADERS)
        if previous:
            headers = self._client.read_row(spreadsheet_id, previous, 1) or headers
        self._create_sheet(spreadsheet_id, title, headers=headers, previous=previous)
        if previous:
            self._rollover(spreadsheet_id, previous, title)
        return title

    def _create_sheet(self, spreadsheet_id: str, title: str, *, headers: list[str], previous: str | None) -> None:
        sheet_id = self._client.add_sheet(spreadsheet_id, title, cols=max(26, len(headers)))
        self._remember_sheet(spreadsheet_id, title, sheet_id)
        self._client.write_rows(spreadsheet_id, title, 1, [headers])
        titles = self._worksheets(spreadsheet_id)
        if previous and previous in titles:
            self._client.copy_header_format(spreadsheet_id, titles[previous], sheet_id, len(headers))
        else:
            self._client.apply_default_header_format(spreadsheet_id, sheet_id, len(headers))
        incr_metric("sheets.sheet.created")
        log_event("sheet_created", spreadsheet_id=spreadsheet_id, sheet=title, copied_from=previous)

    def _rollover(self, spreadsheet_id: str, previous: str, title: str) -> None:
        try:
            mapping = self.column_mapping(spreadsheet_id, previous)
            last = column_letter(max(mapping.total_columns, 1))
            rows = self._client.read_range(spreadsheet_id, previous, f"A2:{last}")
            carried = rollover_rows(rows, mapping)
            self._client.write_rows(spreadsheet_id, title, 2, carried, value_input_option=RAW_INPUT_OPTION)
        except SheetsProviderError as exc:
            incr_metric("sheets.rollover.failed")
            log_event(
                "sheet_rollover_failed",
                level=logging.ERROR,
                spreadsheet_id=spreadsheet_id,
                sheet=title,
                previous=previous,
                error=str(exc),
            )
            return
        incr_metric("sheets.rollover.rows", value=len(carried))
        log_event("sheet_rollover_completed", spreadsheet_id=spreadsheet_id, sheet=title, carried=len(carried))

    # retry envelope

    def _run(self, label: str, spreadsheet_id: str, fn: Callable[[], Any]) -> Any:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return fn()
            except SheetsProviderError as exc:
                if exc.category != "structural":
                    raise TransientExternalFailure(str(exc), reason=exc.category) from exc
                self.invalidate(spreadsheet_id)
                if attempt >= self._max_attempts:
                    raise StructuralMismatch(str(exc)) from exc
                log_event(
                    "sheet_structure_changed_retrying",
                    level=logging.WARNING,
                    operation=label,
                    spreadsheet_id=spreadsheet_id,
                    attempt=attempt,
                    error=str(exc),
                )
        raise StructuralMismatch(f"Sheets {label} did not complete")

    # rows

    def _next_empty_row(self, spreadsheet_id: str, title: str, mapping: ColumnMapping) -> int:
        letter = mapping.letter("nome") if mapping.has("nome") else "A"
        return len(self._client.read_column(spreadsheet_id, title, letter)) + 1

    def _find_in_sheet(self, spreadsheet_id: str, title: str, phone: str) -> int | None:
        mapping = self.column_mapping(spreadsheet_id, title)
        if not mapping.has("telefone"):
            return None
        values = self._client.read_column(spreadsheet_id, title, mapping.letter("telefone"))
        for row_number, value in enumerate(values[1:], start=2):
            if phones_match(value, phone):
                return row_number
        return None

    def insert_lead(self, tenant: Tenant, row: LeadRow, *, skip_if_present: bool = False) -> WriteResult:
        spreadsheet_id = tenant.spreadsheet_id

        def _do() -> WriteResult:
            title = self.resolve_sheet(tenant)
            if skip_if_present:
                existing = self._find_in_sheet(spreadsheet_id, title, row.phone)
                if existing is not None:
                    return WriteResult(title, existing, already_present=True)
            mapping = self.column_mapping(spreadsheet_id, title)
            next_row = self._next_empty_row(spreadsheet_id, title, mapping)
            values = {name: value for name, value in row.cells().items() if mapping.has(name)}
            if not values:
                raise SheetsProviderError(f"No lead columns mapped in sheet {title}", category="structural")
            self._client.write_cells(
                spreadsheet_id,
                title,
                {f"{mapping.letter(name)}{next_row}": value for name, value in values.items()},
            )
            if row.marker and mapping.has("nome"):
                self._highlight(spreadsheet_id, title, next_row, mapping.index("nome"), row.name, row.marker)
            return WriteResult(title, next_row, tuple(values))

        result = self._run("insert_lead", spreadsheet_id, _do)
        if not result.already_present:
            incr_metric("sheets.lead.inserted")
        return result

    def _highlight(self, spreadsheet_id: str, title: str, row: int, column: int, text: str, marker: str) -> None:
        sheet_id = self._worksheets(spreadsheet_id).get(title)
        if sheet_id is None:
            return
        try:
            self._client.highlight_marker(spreadsheet_id, sheet_id, row=row, column=column, text=text, marker=marker)
        except SheetsProviderError as exc:
            log_event("sheet_marker_highlight_failed", level=logging.WARNING, sheet=title, row=row, error=str(exc))

    def find_lead(self, tenant: Tenant, phone: str) -> tuple[str, int] | None:
        spreadsheet_id = tenant.spreadsheet_id

        def _do() -> tuple[str, int] | None:
            current = self.resolve_sheet(tenant)
            titles = [current] + [t for t in monthly_sheets_newest_first(self._worksheets(spreadsheet_id)) if t != current]
            for title in titles:
                row_number = self._find_in_sheet(spreadsheet_id, title, phone)
                if row_number is not None:
                    return title, row_number
            return None

        return self._run("find_lead", spreadsheet_id, _do)

    def update_lead(self, tenant: Tenant, update: LeadUpdate) -> WriteResult | None:
        spreadsheet_id = tenant.spreadsheet_id
        location = self.find_lead(tenant, update.phone)
        if location is None:
            incr_metric("sheets.lead.update_not_found")
            return None
        title, row_number = location

        def _do() -> WriteResult:
            mapping = self.column_mapping(spreadsheet_id, title)
            values = {name: value for name, value in update.cells().items() if mapping.has(name)}
            self._client.write_cells(
                spreadsheet_id,
                title,
                {f"{mapping.letter(name)}{row_number}": value for name, value in values.items()},
            )
            return WriteResult(title, row_number, tuple(values))

        result = self._run("update_lead", spreadsheet_id, _do)
        incr_metric("sheets.lead.updated")
        return result
