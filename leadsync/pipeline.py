from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from leadsync.alerts import AlertChannel
from leadsync.audit import AuditTrail, TrailRecorder
from leadsync.dispatcher import Job
from leadsync.domain.classification import (
    LeadState,
    Outcome,
    classify_event,
    classify_outcome,
    detect_origin,
    detect_product,
    is_paid_source,
    map_source_to_channel,
)
from leadsync.domain.errors import InvalidPayload, TransientExternalFailure, is_retryable
from leadsync.domain.events import SOURCE_KOMMO, SOURCE_TINTIM, CanonicalEvent, thaw
from leadsync.domain.formatting import DEFAULT_TIMEZONE, format_brl, format_date_br, format_phone_br, parse_timestamp
from leadsync.domain.normalization import (
    KommoDelivery,
    KommoLeadEvent,
    kommo_lead_event,
    kommo_lead_source,
    normalize_kommo_body,
    normalize_tintim_payload,
)
from leadsync.models.tenants import Tenant
from leadsync.observability import incr_metric, log_event
from leadsync.providers.kommo.client import KommoContact, KommoProviderError
from leadsync.providers.sheets.store import LeadRow, LeadSheetStore, LeadUpdate
from leadsync.tenants import TenantResolver


TINTIM_MARKER = "(Auto)"
KOMMO_MARKER = "(Kommo)"
RECOVERED_MARKER = "(Recuperado)"
DEFAULT_NEW_LEAD_STATUS = "Lead Gerado"
RECOVERED_SALE_STATUS = "Venda (Cliente não encontrado)"
KOMMO_SALE_STATUS = "Comprou (Kommo)"

KommoContactLookup = Callable[[str | None, str], KommoContact | None]
InvalidationListener = Callable[[Tenant, str], None]


def _with_marker(name: str, marker: str) -> str:
    return f"{name} {marker}"


class LeadPipeline:
    """Worker-side processing: classify a queued delivery and apply it to the tenant's sheet."""

    def __init__(
        self,
        *,
        resolver: TenantResolver,
        store: LeadSheetStore,
        audit: AuditTrail,
        alerts: AlertChannel | None = None,
        kommo_lookup: KommoContactLookup | None = None,
        tz_name: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._audit = audit
        self._alerts = alerts
        self._kommo_lookup = kommo_lookup
        self._tz_name = tz_name
        self._clock = clock
        self._listeners: list[InvalidationListener] = []

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    def _signal_written(self, tenant: Tenant, trace_id: str) -> None:
        incr_metric("pipeline.cache_invalidation", tenant_id=tenant.id)
        for listener in self._listeners:
            try:
                listener(tenant, trace_id)
            except Exception as exc:
                log_event(
                    "cache_invalidation_listener_failed",
                    level=logging.WARNING,
                    tenant_id=tenant.id,
                    trace_id=trace_id,
                    error=str(exc),
                )

    def handle(self, job: Job) -> None:
        if job.lane == SOURCE_TINTIM:
            self.process_tintim(job)
        elif job.lane == SOURCE_KOMMO:
            self.process_kommo(job)
        else:
            raise InvalidPayload(f"No handler for lane {job.lane}", reason="unknown_lane")

    def _record_failure(self, job: Job, trail: TrailRecorder, exc: Exception, *, sale_path: bool) -> None:
        reason = getattr(exc, "reason", None) or type(exc).__name__
        trail.step("failed", status="error", detail=str(exc), reason=reason, attempt=job.attempt_count)
        if is_retryable(exc):
            self._audit.update_delivery(job.trace_id, status="queued", attempts=job.attempt_count, last_error=str(exc))
        else:
            self._audit.update_delivery(
                job.trace_id,
                status="failed",
                reason=reason,
                attempts=job.attempt_count,
                last_error=str(exc),
            )
        if sale_path and self._alerts is not None:
            self._alerts.send("sale_write_failed", f"trace {job.trace_id} ({job.lane}): {exc}")

    # tintim

    def process_tintim(self, job: Job) -> str:
        trail = self._audit.trail(job.trace_id)
        self._audit.update_delivery(job.trace_id, status="processing", attempts=job.attempt_count)
        sale_path = False
        try:
            event = normalize_tintim_payload(job.payload.get("body"))
            trail.step("normalized", phone=event.phone, kind=event.kind.value, attempt=job.attempt_count)
            tenant = self._resolver.resolve(SOURCE_TINTIM, event.tenant_hint)
            trail.step("tenant_resolved", tenant_id=tenant.id)
            if not tenant.flag("sheets_enabled"):
                result = "sheets_disabled"
            elif classify_event(event) is LeadState.NEW_LEAD:
                result = self._tintim_new_lead(job, tenant, event, trail)
            else:
                sale_path = classify_outcome(event.status_label, None, event.sale_amount) is Outcome.SALE
                result = self._tintim_status_update(job, tenant, event, trail, is_sale=sale_path)
        except Exception as exc:
            self._record_failure(job, trail, exc, sale_path=sale_path)
            raise
        self._audit.update_delivery(job.trace_id, status="processed", reason=result, attempts=job.attempt_count)
        incr_metric("pipeline.processed", source=SOURCE_TINTIM, result=result)
        log_event("lead_processed", source=SOURCE_TINTIM, trace_id=job.trace_id, tenant_id=tenant.id, result=result)
        return result

    def _tintim_new_lead(self, job: Job, tenant: Tenant, event: CanonicalEvent, trail: TrailRecorder) -> str:
        payload = thaw(event.raw_payload)
        origin = detect_origin(payload)
        if tenant.flag("organic_filter") and not origin.paid:
            trail.step("filtered", detail="organic origin", channel=origin.channel)
            return "filtered_organic"
        product = detect_product(payload) if tenant.flag("keyword_tracking") else ""
        phone = format_phone_br(event.phone)
        row = LeadRow(
            name=_with_marker(event.display_name or phone, TINTIM_MARKER),
            phone=phone,
            channel=origin.channel,
            first_contact_date=format_date_br(event.occurred_at, self._tz_name),
            status=event.status_label or DEFAULT_NEW_LEAD_STATUS,
            comment=origin.comment,
            product=product,
            marker=TINTIM_MARKER,
        )
        written = self._store.insert_lead(tenant, row, skip_if_present=job.is_redelivery)
        trail.step(
            "sheet_written",
            sheet=written.sheet_name,
            row=written.row,
            already_present=written.already_present,
        )
        if written.already_present:
            return "already_present"
        self._audit.log_lead(
            trace_id=job.trace_id,
            tenant_id=tenant.id,
            source=SOURCE_TINTIM,
            action="insert",
            phone=event.phone,
            lead_name=row.name,
            status=row.status,
            sheet_name=written.sheet_name,
            row_number=written.row,
            channel=origin.channel,
        )
        self._signal_written(tenant, job.trace_id)
        return "inserted"

    def _tintim_status_update(
        self,
        job: Job,
        tenant: Tenant,
        event: CanonicalEvent,
        trail: TrailRecorder,
        *,
        is_sale: bool,
    ) -> str:
        status = event.status_label or DEFAULT_NEW_LEAD_STATUS
        amount = event.sale_amount if event.sale_amount and event.sale_amount > 0 else None
        comment = f'Status atualizado para "{status}" via Tintim'
        if amount:
            comment += f" | Valor: {format_brl(amount)}"
        update = LeadUpdate(
            phone=event.phone,
            status=status,
            comment=comment,
            close_date=format_date_br(event.occurred_at, self._tz_name) if is_sale else None,
            sale_value=format_brl(amount) if is_sale and amount else None,
        )
        written = self._store.update_lead(tenant, update)
        if written is None:
            if is_sale:
                return self._recover_sale(job, tenant, event, update, trail)
            trail.step("lead_not_found", status="warning", phone=event.phone)
            return "not_found"
        trail.step("sheet_updated", sheet=written.sheet_name, row=written.row, fields=list(written.fields))
        self._audit.log_lead(
            trace_id=job.trace_id,
            tenant_id=tenant.id,
            source=SOURCE_TINTIM,
            action="sale" if is_sale else "update",
            phone=event.phone,
            status=status,
            sheet_name=written.sheet_name,
            row_number=written.row,
        )
        self._signal_written(tenant, job.trace_id)
        return "updated"

    def _recover_sale(
        self,
        job: Job,
        tenant: Tenant,
        event: CanonicalEvent,
        update: LeadUpdate,
        trail: TrailRecorder,
    ) -> str:
        origin = detect_origin(thaw(event.raw_payload))
        if tenant.flag("organic_filter") and not origin.paid:
            trail.step("lead_not_found", status="warning", detail="organic sale not recovered")
            return "not_found"
        phone = format_phone_br(event.phone)
        row = LeadRow(
            name=_with_marker(event.display_name or phone, RECOVERED_MARKER),
            phone=phone,
            channel=origin.channel,
            first_contact_date=format_date_br(event.occurred_at, self._tz_name),
            status=RECOVERED_SALE_STATUS,
            comment=update.comment or "",
            marker=RECOVERED_MARKER,
        )
        inserted = self._store.insert_lead(tenant, row, skip_if_present=job.is_redelivery)
        update.status = RECOVERED_SALE_STATUS
        written = self._store.update_lead(tenant, update)
        trail.step("sale_recovered", sheet=inserted.sheet_name, row=inserted.row, updated=written is not None)
        self._audit.log_lead(
            trace_id=job.trace_id,
            tenant_id=tenant.id,
            source=SOURCE_TINTIM,
            action="recovered",
            phone=event.phone,
            lead_name=row.name,
            status=RECOVERED_SALE_STATUS,
            sheet_name=inserted.sheet_name,
            row_number=inserted.row,
            channel=origin.channel,
        )
        incr_metric("pipeline.sale_recovered", source=SOURCE_TINTIM)
        self._signal_written(tenant, job.trace_id)
        return "recovered"

    # kommo

    def process_kommo(self, job: Job) -> list[str]:
        trail = self._audit.trail(job.trace_id)
        self._audit.update_delivery(job.trace_id, status="processing", attempts=job.attempt_count)
        sale_path = False
        results: list[str] = []
        try:
            delivery = normalize_kommo_body(job.payload.get("body"))
            tenant = self._resolver.resolve(SOURCE_KOMMO, delivery.account_id)
            trail.step("tenant_resolved", tenant_id=tenant.id, leads=len(delivery.lead_events))
            contacts = self._remember_contacts(job, delivery)
            for event in delivery.lead_events:
                if event.action == "status" and classify_outcome(None, event.lead.get("status_id")) is Outcome.SALE:
                    sale_path = True
                results.append(self._kommo_lead(job, tenant, delivery, event, contacts, trail))
        except Exception as exc:
            self._record_failure(job, trail, exc, sale_path=sale_path)
            raise
        summary = ",".join(results) or "no_leads"
        self._audit.update_delivery(job.trace_id, status="processed", reason=summary, attempts=job.attempt_count)
        for result in results:
            incr_metric("pipeline.processed", source=SOURCE_KOMMO, result=result)
        log_event("lead_processed", source=SOURCE_KOMMO, trace_id=job.trace_id, tenant_id=tenant.id, results=results)
        return results

    def _remember_contacts(self, job: Job, delivery: KommoDelivery) -> dict[str, tuple[str, str | None]]:
        contacts: dict[str, tuple[str, str | None]] = {}
        for contact in delivery.contact_events:
            if not contact.phone:
                continue
            for lead_id in contact.linked_lead_ids:
                contacts[lead_id] = (contact.phone, contact.name)
                self._audit.record_kommo_contact(
                    trace_id=job.trace_id,
                    account_id=delivery.account_id,
                    contact_id=contact.contact_id,
                    lead_id=lead_id,
                    phone=contact.phone,
                    contact_name=contact.name,
                    action=contact.action,
                )
        return contacts

    def _kommo_contact(
        self,
        delivery: KommoDelivery,
        lead_id: str,
        contacts: dict[str, tuple[str, str | None]],
    ) -> tuple[str | None, str | None]:
        if lead_id in contacts:
            return contacts[lead_id]
        if self._kommo_lookup is not None:
            try:
                contact = self._kommo_lookup(delivery.subdomain, lead_id)
            except KommoProviderError as exc:
                if exc.retryable:
                    raise TransientExternalFailure(str(exc), reason="kommo_api") from exc
                log_event("kommo_contact_lookup_failed", level=logging.WARNING, lead_id=lead_id, error=str(exc))
                contact = None
            if contact is not None and contact.phone:
                return contact.phone, contact.name
        stored = self._audit.kommo_contact_for_lead(lead_id)
        if stored is not None:
            return stored
        return None, None

    def _kommo_lead(
        self,
        job: Job,
        tenant: Tenant,
        delivery: KommoDelivery,
        event: KommoLeadEvent,
        contacts: dict[str, tuple[str, str | None]],
        trail: TrailRecorder,
    ) -> str:
        lead_id = event.lead_id
        if lead_id is None:
            trail.step("kommo_lead_skipped", status="warning", detail="missing lead id", action=event.action)
            return "invalid"
        if event.action == "update":
            trail.step("kommo_lead_logged", lead_id=lead_id, action=event.action)
            return "logged"

        outcome = classify_outcome(None, event.lead.get("status_id")) if event.action == "status" else None
        if outcome is Outcome.LOSS:
            trail.step("kommo_lead_lost", lead_id=lead_id)
            return "lost"

        already_inserted = self._audit.lead_was_seen(
            tenant_id=tenant.id,
            source=SOURCE_KOMMO,
            external_id=lead_id,
        )
        needs_insert = event.action == "add" or not already_inserted
        if event.action == "status" and outcome is not Outcome.SALE and already_inserted:
            trail.step("kommo_status_logged", lead_id=lead_id, status_id=event.lead.get("status_id"))
            return "logged"

        source = kommo_lead_source(event.lead)
        if needs_insert and not is_paid_source(source):
            trail.step("filtered", lead_id=lead_id, detail="organic source", source=source)
            self._audit.log_lead(
                trace_id=job.trace_id,
                tenant_id=tenant.id,
                source=SOURCE_KOMMO,
                action="filtered_organic",
                phone="",
                external_id=lead_id,
                channel=map_source_to_channel(source),
            )
            return "filtered_organic"
        if not tenant.flag("sheets_enabled"):
            return "sheets_disabled"

        phone, contact_name = self._kommo_contact(delivery, lead_id, contacts)
        try:
            lead_event = kommo_lead_event(delivery, event, phone=phone, contact_name=contact_name, now=self._clock())
        except InvalidPayload as exc:
            trail.step("kommo_lead_skipped", status="warning", lead_id=lead_id, detail=str(exc))
            return exc.reason

        result = "logged"
        if needs_insert:
            # status events may arrive for a lead whose creation was never logged
            written = self._kommo_insert(
                job, tenant, lead_event, source, trail, check_existing=event.action == "status"
            )
            result = "inserted" if written else "already_present"
        if outcome is Outcome.SALE:
            result = self._kommo_sale(job, tenant, lead_event, trail)
        return result

    def _kommo_insert(
        self,
        job: Job,
        tenant: Tenant,
        event: CanonicalEvent,
        source: str | None,
        trail: TrailRecorder,
        *,
        check_existing: bool = False,
    ) -> bool:
        phone = format_phone_br(event.phone)
        comment = "Lead recebido via Kommo"
        if source:
            comment += f" | Fonte: {source}"
        row = LeadRow(
            name=_with_marker(event.display_name or phone, KOMMO_MARKER),
            phone=phone,
            channel=map_source_to_channel(source),
            first_contact_date=format_date_br(event.occurred_at, self._tz_name),
            status=DEFAULT_NEW_LEAD_STATUS,
            comment=comment,
            marker=KOMMO_MARKER,
        )
        written = self._store.insert_lead(tenant, row, skip_if_present=check_existing or job.is_redelivery)
        if written.already_present:
            trail.step("already_present", lead_id=event.external_id, sheet=written.sheet_name, row=written.row)
            return False
        trail.step("sheet_written", lead_id=event.external_id, sheet=written.sheet_name, row=written.row)
        self._audit.log_lead(
            trace_id=job.trace_id,
            tenant_id=tenant.id,
            source=SOURCE_KOMMO,
            action="insert",
            phone=event.phone,
            lead_name=row.name,
            status=row.status,
            sheet_name=written.sheet_name,
            row_number=written.row,
            external_id=event.external_id,
            channel=row.channel,
        )
        self._signal_written(tenant, job.trace_id)
        return True

    def _kommo_sale(self, job: Job, tenant: Tenant, event: CanonicalEvent, trail: TrailRecorder) -> str:
        raw = event.raw_payload
        closed_at = parse_timestamp(raw.get("last_modified") or raw.get("updated_at")) or self._clock()
        amount = event.sale_amount if event.sale_amount and event.sale_amount > 0 else None
        comment = "Venda registrada via Kommo"
        if amount:
            comment += f" | Valor: {format_brl(amount)}"
        written = self._store.update_lead(
            tenant,
            LeadUpdate(
                phone=event.phone,
                status=KOMMO_SALE_STATUS,
                comment=comment,
                close_date=format_date_br(closed_at, self._tz_name),
                sale_value=format_brl(amount) if amount else None,
            ),
        )
        if written is None:
            trail.step("lead_not_found", status="warning", lead_id=event.external_id)
            return "not_found"
        trail.step("sheet_updated", lead_id=event.external_id, sheet=written.sheet_name, row=written.row)
        self._audit.log_lead(
            trace_id=job.trace_id,
            tenant_id=tenant.id,
            source=SOURCE_KOMMO,
            action="sale",
            phone=event.phone,
            status=KOMMO_SALE_STATUS,
            sheet_name=written.sheet_name,
            row_number=written.row,
            external_id=event.external_id,
        )
        self._signal_written(tenant, job.trace_id)
        return "sale"
