import re
from datetime import datetime, timezone

import pytest

from leadsync.audit import AuditTrail
from leadsync.domain.columns import DEFAULT_HEADERS
from leadsync.models.tenants import Tenant
from leadsync.observability import reset_metrics


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.insert_payload = None
        self.update_payload = None
        self.filters = []

    def select(self, _fields: str):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.insert_payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.update_payload = payload
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def in_(self, key: str, values):
        self.filters.append(("in", key, list(values)))
        return self

    def _matches(self, row: dict) -> bool:
        for kind, key, value in self.filters:
            if kind == "eq" and row.get(key) != value:
                return False
            if kind == "in" and row.get(key) not in value:
                return False
        return True

    def execute(self):
        if self.db.fail_tables and self.table_name in self.db.fail_tables:
            raise Exception(f"{self.table_name} unavailable")
        table = self.db.tables.setdefault(self.table_name, [])
        if self.operation == "insert":
            row = dict(self.insert_payload or {})
            row.setdefault("id", f"{self.table_name}-{len(table)+1}")
            row.setdefault("created_at", _ts())
            table.append(row)
            return FakeResponse([row])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self.update_payload or {})
                    updated.append(dict(row))
            return FakeResponse(updated)

        rows = [dict(row) for row in table if self._matches(row)]
        return FakeResponse(rows)


class FakeSupabase:
    def __init__(self, tables: dict, fail_tables: set | None = None):
        self.tables = tables
        self.fail_tables = fail_tables or set()

    def table(self, table_name: str):
        return FakeQuery(table_name, self)


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


_CELL = re.compile(r"^([A-Z]+)(\d+)$")


def _col_index(letters: str) -> int:
    idx = 0
    for ch in letters:
        idx = idx * 26 + (ord(ch) - 64)
    return idx - 1


class FakeSheetsClient:
    """In-memory stand-in for SheetsClient, one dict of sheets per spreadsheet id."""

    def __init__(self, books: dict | None = None):
        self.books = books or {}
        self.ids: dict[str, dict[str, int]] = {}
        self.calls: list[tuple] = []
        self.failures: list[Exception] = []
        self.highlights: list[dict] = []
        self.formats: list[tuple] = []
        self.input_options: list[tuple] = []
        for sid, sheets in self.books.items():
            self.ids[sid] = {title: idx for idx, title in enumerate(sheets)}

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def _rows(self, sid, title):
        return self.books.setdefault(sid, {})[title]

    def invalidate(self, spreadsheet_id=None):
        self.calls.append(("invalidate", spreadsheet_id))

    def worksheet_ids(self, sid):
        self._maybe_fail()
        self.calls.append(("worksheet_ids", sid))
        return dict(self.ids.get(sid, {}))

    def read_range(self, sid, title, a1):
        self._maybe_fail()
        self.calls.append(("read_range", title, a1))
        rows = self._rows(sid, title)
        start, _, end = a1.partition(":")
        if start.isdigit():
            row = rows[int(start) - 1] if len(rows) >= int(start) else []
            return [list(row)] if row else []
        if start.isalpha():
            col = _col_index(start)
            values = [row[col] if col < len(row) else "" for row in rows]
            while values and values[-1] == "":
                values.pop()
            return [[value] if value else [] for value in values]
        match = _CELL.match(start)
        first_row = int(match.group(2))
        selected = [list(row) for row in rows[first_row - 1:]]
        while selected and not any(selected[-1]):
            selected.pop()
        return selected

    def read_row(self, sid, title, row):
        rows = self.read_range(sid, title, f"{row}:{row}")
        return rows[0] if rows else []

    def read_column(self, sid, title, letter):
        rows = self.read_range(sid, title, f"{letter}:{letter}")
        return [row[0] if row else "" for row in rows]

    def _set(self, sid, title, row_idx, col_idx, value):
        rows = self._rows(sid, title)
        while len(rows) <= row_idx:
            rows.append([])
        row = rows[row_idx]
        while len(row) <= col_idx:
            row.append("")
        row[col_idx] = value

    def write_cells(self, sid, title, cells):
        self._maybe_fail()
        self.calls.append(("write_cells", title, dict(cells)))
        for a1, value in cells.items():
            match = _CELL.match(a1)
            self._set(sid, title, int(match.group(2)) - 1, _col_index(match.group(1)), value)

    def write_rows(self, sid, title, start_row, rows, value_input_option="USER_ENTERED"):
        self._maybe_fail()
        self.calls.append(("write_rows", title, start_row, [list(r) for r in rows]))
        self.input_options.append((title, start_row, value_input_option))
        for offset, row in enumerate(rows):
            for col, value in enumerate(row):
                self._set(sid, title, start_row - 1 + offset, col, value)

    def add_sheet(self, sid, title, *, rows=1000, cols=26):
        self._maybe_fail()
        self.calls.append(("add_sheet", title))
        self.books.setdefault(sid, {})[title] = []
        sheet_id = 100 + len(self.ids.setdefault(sid, {}))
        self.ids[sid][title] = sheet_id
        return sheet_id

    def copy_header_format(self, sid, source_sheet_id, target_sheet_id, columns):
        self.formats.append(("copy", source_sheet_id, target_sheet_id, columns))

    def apply_default_header_format(self, sid, sheet_id, columns):
        self.formats.append(("default", sheet_id, columns))

    def highlight_marker(self, sid, sheet_id, *, row, column, text, marker):
        self.highlights.append({"sheet_id": sheet_id, "row": row, "column": column, "text": text, "marker": marker})


def make_tenant(**overrides) -> Tenant:
    data = {
        "id": "tenant-1",
        "slug": "acme",
        "name": "Acme",
        "tintim_instance_id": "inst-1",
        "kommo_account_id": "31234567",
        "spreadsheet_id": "sheet-doc-1",
        "sheet_name": "auto",
        "feature_flags": {},
        "active": True,
    }
    data.update(overrides)
    return Tenant.model_validate(data)


def header_row() -> list[str]:
    return list(DEFAULT_HEADERS)


@pytest.fixture(autouse=True)
def _clear_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def fake_db():
    return FakeSupabase(
        {
            "webhook_events": [],
            "lead_trail": [],
            "leads_log": [],
            "kommo_events": [],
        }
    )


@pytest.fixture
def audit(fake_db):
    return AuditTrail(fake_db)


TENANT_ROW = {
    "id": "tenant-1",
    "slug": "acme",
    "name": "Acme",
    "tintim_instance_id": "inst-1",
    "kommo_account_id": "31234567",
    "spreadsheet_id": "sheet-doc-1",
    "sheet_name": "auto",
    "feature_flags": {},
    "active": True,
}


def build_test_services(db=None, sheets=None, **overrides):
    """Wire the real service graph over in-memory Supabase and Sheets fakes."""
    from leadsync.alerts import AlertChannel
    from leadsync.config import Settings
    from leadsync.services import build_services

    values = {
        "admin_api_secret": "admin-secret",
        "kommo_client_secret": "kommo-secret",
        "tenants_file": "missing-clients.json",
        "workers_enabled": False,
        "queue_backoff_base_seconds": 0.0,
        "queue_backoff_max_seconds": 0.0,
    }
    values.update(overrides)
    if db is None:
        db = FakeSupabase({"clients": [dict(TENANT_ROW)], "webhook_events": [], "lead_trail": [], "leads_log": []})
    if sheets is None:
        sheets = FakeSheetsClient({"sheet-doc-1": {"Outubro-26": [header_row()]}})
    services = build_services(
        Settings(**values),
        db,
        sheets_client=sheets,
        alerts=AlertChannel(None, None),
    )
    return services, db, sheets
