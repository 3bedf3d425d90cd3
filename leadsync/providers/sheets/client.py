from __future__ import annotations

import base64
import json
import logging
import random
import time
from threading import Lock
from typing import Any, Callable

import gspread
from gspread.exceptions import APIError

from leadsync.config import Settings
from leadsync.domain.columns import column_letter
from leadsync.observability import incr_metric, log_event


_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_STRUCTURAL_STATUS_CODES = {400, 404}
VALUE_INPUT_OPTION = "USER_ENTERED"
# values stored verbatim, without formula or date parsing
RAW_INPUT_OPTION = "RAW"
HEADER_BACKGROUND = {"red": 0.2, "green": 0.4, "blue": 0.6}
MARKER_COLOR = {"red": 0.0, "green": 0.6, "blue": 0.0}


class SheetsProviderError(Exception):
    """Provider-level exception for Google Sheets failures."""

    def __init__(self, message: str, *, status_code: int | None = None, category: str = "unknown") -> None:
        super().__init__(message)
        self.status_code = status_code
        self._category = category

    @property
    def category(self) -> str:
        return self._category

    @property
    def retryable(self) -> bool:
        return self._category in {"transient", "structural"}


def _api_error_status(exc: APIError) -> int | None:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def quote_range(title: str, a1: str) -> str:
    escaped = title.replace("'", "''")
    return f"'{escaped}'!{a1}"


def load_service_account_info(config: Settings) -> dict[str, Any] | None:
    if config.google_credentials_b64:
        return json.loads(base64.b64decode(config.google_credentials_b64).decode("utf-8"))
    if config.google_credentials_json:
        return json.loads(config.google_credentials_json)
    return None


def build_gspread_client(config: Settings) -> gspread.Client:
    info = load_service_account_info(config)
    if info is not None:
        return gspread.service_account_from_dict(info)
    return gspread.service_account(filename=config.google_service_account_file)


class SheetsClient:
    """Thin retrying wrapper over the Sheets values and batchUpdate endpoints."""

    def __init__(
        self,
        gc_factory: Callable[[], gspread.Client],
        *,
        max_retries: int = 3,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 16.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gc_factory = gc_factory
        self._gc: gspread.Client | None = None
        self._books: dict[str, gspread.Spreadsheet] = {}
        self._lock = Lock()
        self._max_retries = max(1, max_retries)
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._sleep = sleep

    def _book(self, spreadsheet_id: str) -> gspread.Spreadsheet:
        with self._lock:
            book = self._books.get(spreadsheet_id)
            if book is None:
                if self._gc is None:
                    self._gc = self._gc_factory()
                book = self._gc.open_by_key(spreadsheet_id)
                self._books[spreadsheet_id] = book
            return book

    def invalidate(self, spreadsheet_id: str | None = None) -> None:
        with self._lock:
            if spreadsheet_id is None:
                self._books.clear()
            else:
                self._books.pop(spreadsheet_id, None)

    def _with_backoff(self, fn: Callable[[], Any], *, label: str, spreadsheet_id: str) -> Any:
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return fn()
            except APIError as exc:
                status_code = _api_error_status(exc)
                if status_code in _STRUCTURAL_STATUS_CODES:
                    self.invalidate(spreadsheet_id)
                    incr_metric("sheets.request.structural_error", operation=label)
                    raise SheetsProviderError(
                        f"Sheets {label} rejected: HTTP {status_code}: {exc}",
                        status_code=status_code,
                        category="structural",
                    ) from exc
                if status_code not in _RETRYABLE_STATUS_CODES:
                    raise SheetsProviderError(
                        f"Sheets {label} failed: HTTP {status_code}: {exc}",
                        status_code=status_code,
                        category="terminal",
                    ) from exc
                last_error = exc
            except OSError as exc:
                # requests connection errors and socket timeouts
                last_error = exc
            if attempt < self._max_retries:
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                delay += random.uniform(0, delay * 0.2)
                log_event(
                    "sheets_request_retry",
                    level=logging.WARNING,
                    operation=label,
                    attempt=attempt,
                    delay_seconds=round(delay, 2),
                    error=str(last_error),
                )
                self._sleep(delay)
        incr_metric("sheets.request.exhausted", operation=label)
        raise SheetsProviderError(
            f"Sheets {label} failed after {self._max_retries} attempts: {last_error}",
            category="transient",
        ) from last_error

    # reads

    def worksheet_ids(self, spreadsheet_id: str) -> dict[str, int]:
        def _do() -> dict[str, int]:
            return {ws.title: ws.id for ws in self._book(spreadsheet_id).worksheets()}

        return self._with_backoff(_do, label="worksheets", spreadsheet_id=spreadsheet_id)

    def read_range(self, spreadsheet_id: str, title: str, a1: str) -> list[list[str]]:
        def _do() -> list[list[str]]:
            body = self._book(spreadsheet_id).values_get(quote_range(title, a1))
            return [[str(cell) for cell in row] for row in body.get("values", [])]

        return self._with_backoff(_do, label="values_get", spreadsheet_id=spreadsheet_id)

    def read_row(self, spreadsheet_id: str, title: str, row: int) -> list[str]:
        rows = self.read_range(spreadsheet_id, title, f"{row}:{row}")
        return rows[0] if rows else []

    def read_column(self, spreadsheet_id: str, title: str, letter: str) -> list[str]:
        rows = self.read_range(spreadsheet_id, title, f"{letter}:{letter}")
        return [row[0] if row else "" for row in rows]

    # writes

    def write_cells(self, spreadsheet_id: str, title: str, cells: dict[str, Any]) -> None:
        if not cells:
            return
        data = [{"range": quote_range(title, a1), "values": [[value]]} for a1, value in cells.items()]

        def _do() -> None:
            self._book(spreadsheet_id).values_batch_update(
                {"valueInputOption": VALUE_INPUT_OPTION, "data": data}
            )

        self._with_backoff(_do, label="values_batch_update", spreadsheet_id=spreadsheet_id)

    def write_rows(
        self,
        spreadsheet_id: str,
        title: str,
        start_row: int,
        rows: list[list[Any]],
        *,
        value_input_option: str = VALUE_INPUT_OPTION,
    ) -> None:
        if not rows:
            return
        width = max(len(row) for row in rows)
        a1 = f"A{start_row}:{column_letter(width)}{start_row + len(rows) - 1}"

        def _do() -> None:
            self._book(spreadsheet_id).values_update(
                quote_range(title, a1),
                params={"valueInputOption": value_input_option},
                body={"values": rows},
            )

        self._with_backoff(_do, label="values_update", spreadsheet_id=spreadsheet_id)

    def add_sheet(self, spreadsheet_id: str, title: str, *, rows: int = 1000, cols: int = 26) -> int:
        def _do() -> int:
            return self._book(spreadsheet_id).add_worksheet(title=title, rows=rows, cols=cols).id

        return self._with_backoff(_do, label="add_worksheet", spreadsheet_id=spreadsheet_id)

    def _batch_update(self, spreadsheet_id: str, requests: list[dict[str, Any]], *, label: str) -> None:
        def _do() -> None:
            self._book(spreadsheet_id).batch_update({"requests": requests})

        self._with_backoff(_do, label=label, spreadsheet_id=spreadsheet_id)

    def copy_header_format(self, spreadsheet_id: str, source_sheet_id: int, target_sheet_id: int, columns: int) -> None:
        def _grid(sheet_id: int) -> dict[str, int]:
            return {
                "sheetId": sheet_id,
                "startRowIndex": 0,
                "endRowIndex": 1,
                "startColumnIndex": 0,
                "endColumnIndex": columns,
            }

        self._batch_update(
            spreadsheet_id,
            [
                {
                    "copyPaste": {
                        "source": _grid(source_sheet_id),
                        "destination": _grid(target_sheet_id),
                        "pasteType": "PASTE_FORMAT",
                    }
                },
                {
                    "updateSheetProperties": {
                        "properties": {"sheetId": target_sheet_id, "gridProperties": {"frozenRowCount": 1}},
                        "fields": "gridProperties.frozenRowCount",
                    }
                },
            ],
            label="copy_header_format",
        )

    def apply_default_header_format(self, spreadsheet_id: str, sheet_id: int, columns: int) -> None:
        self._batch_update(
            spreadsheet_id,
            [
                {
                    "repeatCell": {
                        "range": {
                            "sheetId": sheet_id,
                            "startRowIndex": 0,
                            "endRowIndex": 1,
                            "startColumnIndex": 0,
                            "endColumnIndex": columns,
                        },
                        "cell": {
                            "userEnteredFormat": {
                                "backgroundColor": HEADER_BACKGROUND,
                                "textFormat": {
                                    "bold": True,
                                    "foregroundColor": {"red": 1.0, "green": 1.0, "blue": 1.0},
                                },
                                "horizontalAlignment": "CENTER",
                            }
                        },
                        "fields": "userEnteredFormat(backgroundColor,textFormat,horizontalAlignment)",
                    }
                },
                {
                    "updateSheetProperties": {
                        "properties": {"sheetId": sheet_id, "gridProperties": {"frozenRowCount": 1}},
                        "fields": "gridProperties.frozenRowCount",
                    }
                },
            ],
            label="default_header_format",
        )

    def highlight_marker(
        self,
        spreadsheet_id: str,
        sheet_id: int,
        *,
        row: int,
        column: int,
        text: str,
        marker: str,
    ) -> None:
        """Render `marker` (a suffix of `text`) in green bold inside the cell."""
        start = text.rfind(marker)
        if start < 0:
            return
        runs = [{"startIndex": start, "format": {"bold": True, "foregroundColor": MARKER_COLOR}}]
        if start > 0:
            runs.insert(0, {"startIndex": 0, "format": {}})
        self._batch_update(
            spreadsheet_id,
            [
                {
                    "updateCells": {
                        "rows": [
                            {
                                "values": [
                                    {
                                        "userEnteredValue": {"stringValue": text},
                                        "textFormatRuns": runs,
                                    }
                                ]
                            }
                        ],
                        "fields": "userEnteredValue,textFormatRuns",
                        "start": {"sheetId": sheet_id, "rowIndex": row - 1, "columnIndex": column},
                    }
                }
            ],
            label="highlight_marker",
        )
