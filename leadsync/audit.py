from __future__ import annotations

import logging
import time
from concurrent.futures import Executor
from datetime import datetime, timezone
from typing import Any, Callable

from leadsync.observability import incr_metric, log_event


UNFINISHED_DELIVERY_STATUSES = ["queued", "processing"]
# leads_log actions that mean an external lead was already handled once
SEEN_LEAD_ACTIONS = frozenset({"insert", "recovered", "filtered_organic"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditTrail:
    """Best-effort writer for delivery records, lead logs and per-trace steps.

    Writes never raise: a failed audit write is logged and counted, and the
    caller carries on. When an executor is supplied writes are submitted to it
    instead of running inline.
    """

    def __init__(self, client: Any, *, executor: Executor | None = None) -> None:
        self._client = client
        self._executor = executor

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _run(self, operation: str, fn: Callable[[], Any]) -> None:
        if self._client is None:
            return
        if self._executor is not None:
            self._executor.submit(self._safe, operation, fn)
        else:
            self._safe(operation, fn)

    def _safe(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as exc:
            incr_metric("audit.write.failed", operation=operation)
            log_event("audit_write_failed", level=logging.WARNING, operation=operation, error=str(exc))
            return None

    def _read(self, operation: str, fn: Callable[[], Any], default: Any) -> Any:
        if self._client is None:
            return default
        try:
            return fn()
        except Exception as exc:
            incr_metric("audit.read.failed", operation=operation)
            log_event("audit_read_failed", level=logging.WARNING, operation=operation, error=str(exc))
            return default

    # deliveries

    def record_delivery(
        self,
        *,
        trace_id: str,
        source: str,
        status: str,
        payload: dict[str, Any] | None = None,
        tenant_id: str | None = None,
        phone: str | None = None,
        event_type: str | None = None,
        job_kind: str | None = None,
        reason: str | None = None,
    ) -> None:
        row = {
            "trace_id": trace_id,
            "source": source,
            "status": status,
            "processing_result": reason or status,
            "payload": payload or {},
            "tenant_id": tenant_id,
            "phone": phone,
            "event_type": event_type,
            "job_kind": job_kind,
            "attempts": 0,
            "created_at": _now_iso(),
        }
        self._run("record_delivery", lambda: self._client.table("webhook_events").insert(row).execute())

    def update_delivery(self, trace_id: str, *, status: str, **fields: Any) -> None:
        values = {"status": status, "processing_result": fields.pop("reason", None) or status, **fields}
        if status not in UNFINISHED_DELIVERY_STATUSES:
            values.setdefault("processed_at", _now_iso())
        self._run(
            "update_delivery",
            lambda: self._client.table("webhook_events").update(values).eq("trace_id", trace_id).execute(),
        )

    def record_dead_letter(self, *, trace_id: str, lane: str, job_id: str, attempts: int, error: str | None) -> None:
        self.update_delivery(
            trace_id,
            status="dead_letter",
            reason="exhausted_retries",
            attempts=attempts,
            last_error=error,
            dead_letter={"lane": lane, "job_id": job_id, "recorded_at": _now_iso()},
        )

    def delivery(self, trace_id: str) -> dict[str, Any] | None:
        def _fetch() -> dict[str, Any] | None:
            response = self._client.table("webhook_events").select("*").eq("trace_id", trace_id).execute()
            return (response.data or [None])[0]

        return self._read("delivery", _fetch, None)

    def unfinished_deliveries(self) -> list[dict[str, Any]]:
        def _fetch() -> list[dict[str, Any]]:
            response = (
                self._client.table("webhook_events")
                .select("*")
                .in_("status", UNFINISHED_DELIVERY_STATUSES)
                .execute()
            )
            return response.data or []

        return self._read("unfinished_deliveries", _fetch, [])

    # trail

    def add_step(
        self,
        *,
        trace_id: str,
        step_order: int,
        step_name: str,
        status: str,
        detail: str | None = None,
        metadata: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> None:
        row = {
            "trace_id": trace_id,
            "step_order": step_order,
            "step_name": step_name,
            "status": status,
            "detail": detail,
            "metadata": metadata or {},
            "duration_ms": duration_ms,
            "created_at": _now_iso(),
        }
        self._run("add_step", lambda: self._client.table("lead_trail").insert(row).execute())

    def trail(self, trace_id: str) -> "TrailRecorder":
        # retried and recovered jobs append after the steps already stored for the trace
        recorded = self.trail_steps(trace_id)
        start = max((row.get("step_order") or 0 for row in recorded), default=0)
        return TrailRecorder(self, trace_id, start=start)

    def trail_steps(self, trace_id: str) -> list[dict[str, Any]]:
        def _fetch() -> list[dict[str, Any]]:
            response = self._client.table("lead_trail").select("*").eq("trace_id", trace_id).execute()
            return sorted(response.data or [], key=lambda row: row.get("step_order") or 0)

        return self._read("trail_steps", _fetch, [])

    # leads

    def log_lead(
        self,
        *,
        trace_id: str,
        tenant_id: str,
        source: str,
        action: str,
        phone: str,
        lead_name: str | None = None,
        status: str | None = None,
        sheet_name: str | None = None,
        row_number: int | None = None,
        external_id: str | None = None,
        channel: str | None = None,
    ) -> None:
        row = {
            "trace_id": trace_id,
            "tenant_id": tenant_id,
            "source": source,
            "action": action,
            "phone": phone,
            "lead_name": lead_name,
            "status": status,
            "sheet_name": sheet_name,
            "row_number": row_number,
            "external_id": external_id,
            "channel": channel,
            "created_at": _now_iso(),
        }
        self._run("log_lead", lambda: self._client.table("leads_log").insert(row).execute())

    def lead_was_seen(self, *, tenant_id: str, source: str, external_id: str) -> bool:
        def _fetch() -> bool:
            response = (
                self._client.table("leads_log")
                .select("action")
                .eq("tenant_id", tenant_id)
                .eq("source", source)
                .eq("external_id", external_id)
                .execute()
            )
            return any(row.get("action") in SEEN_LEAD_ACTIONS for row in response.data or [])

        return self._read("lead_was_seen", _fetch, False)

    # kommo contacts

    def record_kommo_contact(
        self,
        *,
        trace_id: str,
        account_id: str | None,
        contact_id: str | None,
        lead_id: str,
        phone: str | None,
        contact_name: str | None,
        action: str,
    ) -> None:
        row = {
            "trace_id": trace_id,
            "account_id": account_id,
            "contact_id": contact_id,
            "lead_id": lead_id,
            "phone": phone,
            "contact_name": contact_name,
            "action": action,
            "created_at": _now_iso(),
        }
        self._run("record_kommo_contact", lambda: self._client.table("kommo_events").insert(row).execute())

    def kommo_contact_for_lead(self, lead_id: str) -> tuple[str, str | None] | None:
        def _fetch() -> tuple[str, str | None] | None:
            response = self._client.table("kommo_events").select("*").eq("lead_id", lead_id).execute()
            rows = [row for row in response.data or [] if row.get("phone")]
            if not rows:
                return None
            latest = max(rows, key=lambda row: row.get("created_at") or "")
            return latest["phone"], latest.get("contact_name")

        return self._read("kommo_contact_for_lead", _fetch, None)


class TrailRecorder:
    def __init__(self, sink: AuditTrail, trace_id: str, start: int = 0) -> None:
        self._sink = sink
        self.trace_id = trace_id
        self._order = start
        self._last = time.monotonic()

    def step(self, name: str, status: str = "ok", detail: str | None = None, **metadata: Any) -> None:
        now = time.monotonic()
        self._order += 1
        self._sink.add_step(
            trace_id=self.trace_id,
            step_order=self._order,
            step_name=name,
            status=status,
            detail=detail,
            metadata=metadata,
            duration_ms=int((now - self._last) * 1000),
        )
        self._last = now
