from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Protocol

from pydantic import ValidationError

from leadsync.domain.errors import TenantNotFound
from leadsync.models.tenants import Tenant
from leadsync.observability import incr_metric, log_event


SOURCE_BINDINGS: dict[str, tuple[str, ...]] = {
    "tintim": ("instance_id",),
    "kommo": ("account_id", "pipeline_id"),
    "kommo_pipeline": ("pipeline_id",),
}


class TenantStore(Protocol):
    def load(self) -> list[Tenant]: ...


def _parse_tenants(rows: list[dict[str, Any]], *, origin: str) -> list[Tenant]:
    tenants: list[Tenant] = []
    for row in rows:
        try:
            tenants.append(Tenant.model_validate(row))
        except ValidationError as exc:
            log_event(
                "tenant_row_invalid",
                level=logging.WARNING,
                origin=origin,
                tenant_id=row.get("id"),
                error=str(exc),
            )
    return tenants


class SupabaseTenantStore:
    def __init__(self, client: Any, table: str = "clients") -> None:
        self._client = client
        self._table = table

    def load(self) -> list[Tenant]:
        response = self._client.table(self._table).select("*").eq("active", True).execute()
        return _parse_tenants(response.data or [], origin="supabase")


class FileTenantStore:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> list[Tenant]:
        if not self._path.exists():
            return []
        raw = json.loads(self._path.read_text(encoding="utf-8"))
        rows = raw.get("clients", []) if isinstance(raw, dict) else raw
        return _parse_tenants(rows, origin=str(self._path))


class TenantResolver:
    """Maps a source binding (instance id, account id, pipeline id) to its tenant."""

    def __init__(
        self,
        store: TenantStore | None,
        *,
        fallback: TenantStore | None = None,
        refresh_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._fallback = fallback
        self._refresh_interval = refresh_interval_seconds
        self._clock = clock
        self._lock = Lock()
        self._tenants: list[Tenant] = []
        self._loaded_at: float | None = None

    def _load(self) -> list[Tenant]:
        if self._store is not None:
            try:
                return self._store.load()
            except Exception as exc:
                incr_metric("tenants.load.failed", origin="primary")
                log_event("tenant_store_load_failed", level=logging.WARNING, error=str(exc))
                if self._fallback is None:
                    raise
        if self._fallback is not None:
            return self._fallback.load()
        return []

    def tenants(self) -> list[Tenant]:
        with self._lock:
            now = self._clock()
            stale = self._loaded_at is None or now - self._loaded_at >= self._refresh_interval
            if stale:
                self._tenants = [tenant for tenant in self._load() if tenant.active]
                self._loaded_at = now
                log_event("tenants_loaded", count=len(self._tenants))
            return list(self._tenants)

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None
        incr_metric("tenants.cache.invalidated")

    def resolve(self, source_tag: str, binding_value: str | None) -> Tenant:
        fields = SOURCE_BINDINGS.get(source_tag)
        if fields is None:
            raise ValueError(f"Unknown source tag: {source_tag}")
        if binding_value is None or str(binding_value).strip() == "":
            raise TenantNotFound(source_tag, binding_value)
        wanted = str(binding_value).strip()
        tenants = self.tenants()
        for field_name in fields:
            for tenant in tenants:
                if getattr(tenant, field_name) != wanted:
                    continue
                if source_tag.startswith("kommo") and not tenant.flag("kommo_enabled"):
                    continue
                return tenant
        incr_metric("tenants.resolve.not_found", source=source_tag)
        raise TenantNotFound(source_tag, wanted)

    def get(self, tenant_id: str) -> Tenant | None:
        return next((tenant for tenant in self.tenants() if tenant.id == tenant_id), None)
