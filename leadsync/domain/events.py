from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class EventKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"


SOURCE_TINTIM = "tintim"
SOURCE_KOMMO = "kommo"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Turn a frozen payload back into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class CanonicalEvent:
    source_id: str
    tenant_hint: str | None
    phone: str
    display_name: str | None
    occurred_at: datetime
    kind: EventKind
    kind_tagged: bool = False
    status_label: str | None = None
    status_id: str | None = None
    sale_amount: float | None = None
    external_id: str | None = None
    raw_payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw_payload", _freeze(self.raw_payload))
