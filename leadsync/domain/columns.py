from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from leadsync.domain.classification import fold_text


DEFAULT_HEADERS = (
    "Nome do Lead",
    "Telefone",
    "Meio de Contato",
    "Data 1º Contato",
    "Data Fechamento",
    "Valor de Fechamento",
    "Produto",
    "Status Lead",
    "DIA 1 ",
    "DIA 2",
    "DIA 3",
    "DIA 4",
    "DIA 5",
    "Comentários",
)

# Order matters: the first alias that matches a header claims it.
HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "nome": ("nome do lead", "nome"),
    "telefone": ("telefone",),
    "origem": ("meio de contato",),
    "data": ("data 1º contato", "data 1", "data 1o contato"),
    "dataFechamento": ("data fechamento", "data de fechamento"),
    "valor": ("valor de fechamento", "valor"),
    "cidade": ("cidade",),
    "produto": ("produto",),
    "status": ("status lead", "status"),
    "dia1": ("dia 1",),
    "dia2": ("dia 2",),
    "dia3": ("dia 3",),
    "dia4": ("dia 4",),
    "dia5": ("dia 5",),
    "comentarios": ("comentários", "comentarios"),
}
REQUIRED_FIELDS = ("nome", "telefone", "status", "comentarios")
DAY_FIELDS = ("dia1", "dia2", "dia3", "dia4", "dia5")

_WHITESPACE = re.compile(r"\s+")


def normalize_header(value: object) -> str:
    return _WHITESPACE.sub(" ", fold_text(value)).strip()


def column_letter(n: int) -> str:
    """Convert 1-based column index to A1 letter(s)."""
    s = ""
    while n:
        n, r = divmod(n - 1, 26)
        s = chr(65 + r) + s
    return s


@dataclass(frozen=True)
class ColumnMapping:
    columns: Mapping[str, int]
    total_columns: int
    headers: tuple[str, ...] = field(default=())

    def has(self, field_name: str) -> bool:
        return field_name in self.columns

    def index(self, field_name: str) -> int:
        return self.columns[field_name]

    def letter(self, field_name: str) -> str:
        return column_letter(self.columns[field_name] + 1)

    def missing_required(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if name not in self.columns]

    def cell(self, row: Sequence[str], field_name: str) -> str:
        idx = self.columns.get(field_name)
        if idx is None or idx >= len(row):
            return ""
        return str(row[idx] or "")


def build_column_mapping(headers: Sequence[object]) -> ColumnMapping:
    normalized = [normalize_header(header) for header in headers]
    columns: dict[str, int] = {}
    claimed: set[int] = set()
    for field_name, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            wanted = normalize_header(alias)
            idx = next(
                (i for i, header in enumerate(normalized) if header == wanted and i not in claimed),
                None,
            )
            if idx is not None:
                columns[field_name] = idx
                claimed.add(idx)
                break
    return ColumnMapping(
        columns=columns,
        total_columns=len(headers),
        headers=tuple(str(header) for header in headers),
    )
