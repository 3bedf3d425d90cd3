from datetime import datetime, timezone

import pytest

from conftest import FakeSheetsClient, FakeSupabase, header_row, make_tenant
from leadsync.audit import AuditTrail
from leadsync.dispatcher import Job, JobLane
from leadsync.domain.errors import InvalidPayload, TenantNotFound, TransientExternalFailure
from leadsync.pipeline import LeadPipeline
from leadsync.providers.kommo.client import KommoContact, KommoProviderError
from leadsync.providers.sheets.client import SheetsProviderError
from leadsync.providers.sheets.store import LeadSheetStore
from leadsync.tenants import TenantResolver


SID = "sheet-doc-1"
NOW = datetime(2026, 10, 16, 15, 0, tzinfo=timezone.utc)


class _StaticTenants:
    def __init__(self, *tenants):
        self.tenants = list(tenants)

    def load(self):
        return list(self.tenants)


class _RecordingAlerts:
    def __init__(self):
        self.sent = []

    def send(self, alert_type, message):
        self.sent.append((alert_type, message))
        return True


def _env(tenant=None, books=None, kommo_lookup=None):
    db = FakeSupabase({"webhook_events": [], "lead_trail": [], "leads_log": [], "kommo_events": []})
    sheets = FakeSheetsClient(books if books is not None else {SID: {"Outubro-26": [header_row()]}})
    alerts = _RecordingAlerts()
    pipeline = LeadPipeline(
        resolver=TenantResolver(_StaticTenants(tenant or make_tenant())),
        store=LeadSheetStore(sheets, clock=lambda: NOW),
        audit=AuditTrail(db),
        alerts=alerts,
        kommo_lookup=kommo_lookup,
        clock=lambda: NOW,
    )
    return pipeline, sheets, db, alerts


def _job(lane, body, *, attempt=1, trace_id="trace-1"):
    return Job(
        id=f"job-{trace_id}",
        lane=lane,
        kind=f"{lane}.webhook",
        payload={"body": body, "request_id": "req-1"},
        trace_id=trace_id,
        attempt_count=attempt,
    )


def _rows(sheets, title="Outubro-26"):
    return sheets.books[SID][title]


def _existing(name, phone, status="Fez Contato"):
    return [name, phone, "WhatsApp", "01/10/2026", "", "", "", status, "ok", "ok", "", "", "", "nota"]


CREATE_BODY = {
    "instanceId": "inst-1",
    "name": None,
    "phone": "5511992083378",
    "status": {"name": "Fez Contato"},
    "moment": "2026-10-16T13:00:00Z",
}


def test_tintim_creation_writes_row_with_formatted_phone_as_name():
    pipeline, sheets, db, _ = _env()
    db.tables["webhook_events"].append({"trace_id": "trace-1", "status": "queued"})

    assert pipeline.process_tintim(_job("tintim", CREATE_BODY)) == "inserted"

    row = _rows(sheets)[1]
    assert row[0] == "(11)99208-3378 (Auto)"
    assert row[1] == "(11)99208-3378"
    assert row[2] == "WhatsApp"
    assert row[3] == "16/10/2026"
    assert row[6] == ""
    assert row[7] == "Fez Contato"
    assert row[13] == "Lead chegou via WhatsApp"
    assert sheets.highlights[0]["marker"] == "(Auto)"

    delivery = db.tables["webhook_events"][0]
    assert delivery["status"] == "processed"
    assert delivery["processing_result"] == "inserted"
    assert delivery["processed_at"]
    (logged,) = db.tables["leads_log"]
    assert logged["action"] == "insert"
    assert logged["sheet_name"] == "Outubro-26"
    assert logged["row_number"] == 2
    steps = [step["step_name"] for step in db.tables["lead_trail"]]
    assert steps == ["normalized", "tenant_resolved", "sheet_written"]


def test_tintim_creation_detects_product_and_paid_origin():
    pipeline, sheets, _, _ = _env()
    body = dict(CREATE_BODY, chatName="Maria", utm_source="facebook", utm_campaign="Campanha BPC")

    pipeline.process_tintim(_job("tintim", body))

    row = _rows(sheets)[1]
    assert row[0] == "Maria (Auto)"
    assert row[2] == "Meta Ads"
    assert row[6] == "BPC/LOAS"
    assert row[13] == "Lead chegou no Wpp pelo Meta"


def test_keyword_tracking_flag_disables_product():
    pipeline, sheets, _, _ = _env(tenant=make_tenant(feature_flags={"keyword_tracking": False}))
    pipeline.process_tintim(_job("tintim", dict(CREATE_BODY, utm_campaign="Campanha BPC")))
    assert _rows(sheets)[1][6] == ""


def test_redelivered_creation_does_not_duplicate_row():
    pipeline, sheets, _, _ = _env()

    assert pipeline.process_tintim(_job("tintim", CREATE_BODY)) == "inserted"
    assert pipeline.process_tintim(_job("tintim", CREATE_BODY, attempt=2)) == "already_present"

    assert len(_rows(sheets)) == 2


def test_tintim_sale_update_touches_only_update_cells():
    books = {SID: {"Outubro-26": [header_row(), _existing("Maria (Auto)", "(11)99208-3378")]}}
    pipeline, sheets, db, _ = _env(books=books)
    body = {
        "instanceId": "inst-1",
        "event_type": "lead.update",
        "phone": "5511992083378",
        "status": "Comprou",
        "sale_amount": 1500,
        "moment": "2026-10-16T13:00:00Z",
    }

    assert pipeline.process_tintim(_job("tintim", body)) == "updated"

    row = _rows(sheets)[1]
    assert row[7] == "Comprou"
    assert row[4] == "16/10/2026"
    assert row[5] == "R$ 1500,00"
    assert row[13] == 'Status atualizado para "Comprou" via Tintim | Valor: R$ 1500,00'
    assert row[8:10] == ["ok", "ok"]
    assert row[0] == "Maria (Auto)"
    assert row[3] == "01/10/2026"
    assert db.tables["leads_log"][0]["action"] == "sale"


def test_untagged_payload_with_amount_is_treated_as_update():
    books = {SID: {"Outubro-26": [header_row(), _existing("Maria (Auto)", "(11)99208-3378")]}}
    pipeline, sheets, _, _ = _env(books=books)
    body = {"instanceId": "inst-1", "phone": "5511992083378", "status": "Comprou", "sale_amount": "1500"}

    assert pipeline.process_tintim(_job("tintim", body)) == "updated"
    assert len(_rows(sheets)) == 2


def test_intermediate_update_does_not_write_close_date_or_value():
    books = {SID: {"Outubro-26": [header_row(), _existing("Maria (Auto)", "(11)99208-3378")]}}
    pipeline, sheets, _, _ = _env(books=books)
    body = {"instanceId": "inst-1", "event_type": "lead.update", "phone": "5511992083378", "status": "Em negociação"}

    assert pipeline.process_tintim(_job("tintim", body)) == "updated"

    row = _rows(sheets)[1]
    assert row[7] == "Em negociação"
    assert row[4] == ""
    assert row[5] == ""


def test_update_for_unknown_phone_is_not_found():
    pipeline, sheets, _, _ = _env()
    body = {"instanceId": "inst-1", "event_type": "lead.update", "phone": "5511992083378", "status": "Fez Contato"}

    assert pipeline.process_tintim(_job("tintim", body)) == "not_found"
    assert len(_rows(sheets)) == 1


def test_sale_for_unknown_phone_is_recovered():
    pipeline, sheets, db, _ = _env()
    body = {
        "instanceId": "inst-1",
        "event_type": "lead.update",
        "chatName": "Paulo",
        "phone": "5511977776666",
        "status": "Venda",
        "sale_amount": 800,
        "moment": "2026-10-16T13:00:00Z",
    }

    assert pipeline.process_tintim(_job("tintim", body)) == "recovered"

    row = _rows(sheets)[1]
    assert row[0] == "Paulo (Recuperado)"
    assert row[7] == "Venda (Cliente não encontrado)"
    assert row[5] == "R$ 800,00"
    assert row[4] == "16/10/2026"
    assert db.tables["leads_log"][0]["action"] == "recovered"


def test_organic_filter_skips_unpaid_creations():
    pipeline, sheets, _, _ = _env(tenant=make_tenant(feature_flags={"organic_filter": True}))

    assert pipeline.process_tintim(_job("tintim", CREATE_BODY)) == "filtered_organic"
    assert pipeline.process_tintim(_job("tintim", dict(CREATE_BODY, source="google"), trace_id="t-2")) == "inserted"
    assert len(_rows(sheets)) == 2


def test_sheets_disabled_tenant_is_acknowledged_without_write():
    pipeline, sheets, _, _ = _env(tenant=make_tenant(feature_flags={"sheets_enabled": False}))
    assert pipeline.process_tintim(_job("tintim", CREATE_BODY)) == "sheets_disabled"
    assert len(_rows(sheets)) == 1


def test_unbound_tenant_fails_without_dead_letter():
    pipeline, sheets, db, _ = _env()
    db.tables["webhook_events"].append({"trace_id": "trace-x", "status": "queued"})
    lane = JobLane("tintim", pipeline.handle, clock=lambda: 0.0)
    lane.enqueue("tintim.webhook", {"body": dict(CREATE_BODY, instanceId="unknown")}, trace_id="trace-x")

    lane.process_next()

    assert lane.dead_letters() == []
    assert lane.stats()["total_failed"] == 1
    delivery = db.tables["webhook_events"][0]
    assert delivery["status"] == "failed"
    assert delivery["processing_result"] == "no_client"
    assert len(_rows(sheets)) == 1


def test_transient_sheet_failure_keeps_delivery_queued_and_alerts_on_sale():
    books = {SID: {"Outubro-26": [header_row(), _existing("Maria (Auto)", "(11)99208-3378")]}}
    pipeline, sheets, db, alerts = _env(books=books)
    db.tables["webhook_events"].append({"trace_id": "trace-1", "status": "queued"})
    sheets.failures.append(SheetsProviderError("quota", status_code=429, category="transient"))
    body = {"instanceId": "inst-1", "event_type": "lead.update", "phone": "5511992083378", "status": "Comprou"}

    with pytest.raises(TransientExternalFailure):
        pipeline.process_tintim(_job("tintim", body))

    delivery = db.tables["webhook_events"][0]
    assert delivery["status"] == "queued"
    assert delivery["last_error"]
    assert [alert_type for alert_type, _ in alerts.sent] == ["sale_write_failed"]


def test_handle_rejects_unknown_lane():
    pipeline, _, _, _ = _env()
    with pytest.raises(InvalidPayload) as exc_info:
        pipeline.handle(_job("hubspot", {}))
    assert exc_info.value.reason == "unknown_lane"


def test_invalidation_listeners_run_after_writes():
    pipeline, _, _, _ = _env()
    seen = []
    pipeline.add_invalidation_listener(lambda tenant, trace_id: seen.append((tenant.id, trace_id)))

    def _broken(tenant, trace_id):
        raise RuntimeError("listener down")

    pipeline.add_invalidation_listener(_broken)
    pipeline.process_tintim(_job("tintim", CREATE_BODY))
    assert seen == [("tenant-1", "trace-1")]


# kommo


def _kommo_lead(lead_id="9001", source="Google Ads", **extra):
    lead = {"id": lead_id, "name": f"Lead {lead_id}", **extra}
    if source:
        lead["custom_fields"] = [{"name": "Fonte de prospecção", "values": [{"value": source}]}]
    return lead


def _kommo_contact(lead_id="9001", phone="+55 11 98888-7777"):
    return {
        "id": "55",
        "name": "João",
        "custom_fields": [{"code": "PHONE", "values": [{"value": phone}]}],
        "linked_leads_id": {lead_id: lead_id},
    }


def _kommo_body(leads, contacts=None):
    body = {"account": {"id": "31234567", "subdomain": "acme"}, "leads": leads}
    if contacts:
        body["contacts"] = {"add": contacts}
    return body


def test_kommo_new_paid_lead_is_inserted_with_contact_phone():
    pipeline, sheets, db, _ = _env()
    body = _kommo_body({"add": [_kommo_lead()]}, [_kommo_contact()])

    assert pipeline.process_kommo(_job("kommo", body)) == ["inserted"]

    row = _rows(sheets)[1]
    assert row[0] == "João (Kommo)"
    assert row[1] == "(11)98888-7777"
    assert row[2] == "Google Ads"
    assert row[3] == "16/10/2026"
    assert row[7] == "Lead Gerado"
    assert row[13] == "Lead recebido via Kommo | Fonte: Google Ads"
    assert db.tables["kommo_events"][0]["phone"] == "5511988887777"
    assert db.tables["leads_log"][0]["external_id"] == "9001"


def test_kommo_organic_lead_is_filtered():
    pipeline, sheets, _, _ = _env()
    body = _kommo_body({"add": [_kommo_lead(source="Indicação")]}, [_kommo_contact()])

    assert pipeline.process_kommo(_job("kommo", body)) == ["filtered_organic"]
    assert len(_rows(sheets)) == 1


def test_kommo_lead_without_phone_is_skipped():
    pipeline, sheets, _, _ = _env()
    assert pipeline.process_kommo(_job("kommo", _kommo_body({"add": [_kommo_lead()]}))) == ["missing_phone"]
    assert len(_rows(sheets)) == 1


def test_kommo_phone_falls_back_to_api_lookup():
    lookups = []

    def _lookup(subdomain, lead_id):
        lookups.append((subdomain, lead_id))
        return KommoContact(contact_id="77", name="Ana", phone="5511977776666")

    pipeline, sheets, _, _ = _env(kommo_lookup=_lookup)

    assert pipeline.process_kommo(_job("kommo", _kommo_body({"add": [_kommo_lead()]}))) == ["inserted"]
    assert lookups == [("acme", "9001")]
    assert _rows(sheets)[1][:2] == ["Ana (Kommo)", "(11)97777-6666"]


def test_kommo_api_connectivity_error_is_transient():
    def _lookup(subdomain, lead_id):
        raise KommoProviderError("Kommo API connectivity error: timeout", category="transient")

    pipeline, _, _, _ = _env(kommo_lookup=_lookup)
    with pytest.raises(TransientExternalFailure):
        pipeline.process_kommo(_job("kommo", _kommo_body({"add": [_kommo_lead()]})))


def test_kommo_won_stage_updates_known_lead_as_sale():
    books = {SID: {"Outubro-26": [header_row(), _existing("João (Kommo)", "(11)98888-7777")]}}
    pipeline, sheets, db, _ = _env(books=books)
    db.tables["leads_log"].append(
        {"tenant_id": "tenant-1", "source": "kommo", "external_id": "9001", "action": "insert"}
    )
    db.tables["kommo_events"].append(
        {"lead_id": "9001", "phone": "5511988887777", "contact_name": "João", "created_at": "2026-10-01T00:00:00"}
    )
    body = _kommo_body(
        {"status": [{"id": "9001", "status_id": "142", "price": "2500", "last_modified": 1760000000}]}
    )

    assert pipeline.process_kommo(_job("kommo", body)) == ["sale"]

    row = _rows(sheets)[1]
    assert row[7] == "Comprou (Kommo)"
    assert row[5] == "R$ 2500,00"
    assert row[4] == "09/10/2025"
    assert row[13] == "Venda registrada via Kommo | Valor: R$ 2500,00"
    assert len(_rows(sheets)) == 2


def test_kommo_first_seen_status_change_inserts_then_marks_sale():
    pipeline, sheets, _, _ = _env()
    body = _kommo_body(
        {"status": [_kommo_lead(status_id="142", price="900")]},
        [_kommo_contact()],
    )

    assert pipeline.process_kommo(_job("kommo", body)) == ["sale"]

    row = _rows(sheets)[1]
    assert row[0] == "João (Kommo)"
    assert row[7] == "Comprou (Kommo)"
    assert row[5] == "R$ 900,00"


def test_kommo_lost_and_plain_updates_are_logged_only():
    pipeline, sheets, db, _ = _env()
    db.tables["leads_log"].append(
        {"tenant_id": "tenant-1", "source": "kommo", "external_id": "9002", "action": "insert"}
    )
    body = _kommo_body(
        {
            "status": [{"id": "9001", "status_id": "143"}, {"id": "9002", "status_id": "77"}],
            "update": [{"id": "9003"}],
        }
    )

    assert pipeline.process_kommo(_job("kommo", body)) == ["logged", "lost", "logged"]
    assert len(_rows(sheets)) == 1


def test_kommo_tenant_must_have_kommo_enabled():
    pipeline, _, _, _ = _env(tenant=make_tenant(feature_flags={"kommo_enabled": False}))
    with pytest.raises(TenantNotFound):
        pipeline.process_kommo(_job("kommo", _kommo_body({"add": [_kommo_lead()]}, [_kommo_contact()])))


def test_kommo_status_events_without_insert_history_share_one_row():
    pipeline, sheets, _, _ = _env()
    pipeline._audit = AuditTrail(None)
    contacts = [_kommo_contact()]

    results = [
        pipeline.process_kommo(_job("kommo", _kommo_body({"status": [_kommo_lead(status_id=stage)]}, contacts)))
        for stage in ("100", "101", "102")
    ]

    assert results == [["inserted"], ["already_present"], ["already_present"]]
    assert len(_rows(sheets)) == 2
    assert _rows(sheets)[1][0] == "João (Kommo)"


def test_kommo_filtered_organic_lead_is_not_filtered_again_on_status_change():
    pipeline, sheets, db, _ = _env()
    contacts = [_kommo_contact()]
    created = _kommo_body({"add": [_kommo_lead(source="Indicação")]}, contacts)
    moved = _kommo_body({"status": [_kommo_lead(source="Indicação", status_id="100")]}, contacts)

    assert pipeline.process_kommo(_job("kommo", created)) == ["filtered_organic"]
    assert pipeline.process_kommo(_job("kommo", moved, trace_id="trace-2")) == ["logged"]

    (logged,) = db.tables["leads_log"]
    assert logged["action"] == "filtered_organic"
    assert logged["external_id"] == "9001"
    assert len(_rows(sheets)) == 1


def test_repeated_tintim_sale_update_leaves_row_unchanged():
    books = {SID: {"Outubro-26": [header_row(), _existing("Maria (Auto)", "(11)99208-3378")]}}
    pipeline, sheets, _, _ = _env(books=books)
    body = {
        "instanceId": "inst-1",
        "event_type": "lead.update",
        "phone": "5511992083378",
        "status": "Comprou",
        "sale_amount": 1500,
        "moment": "2026-10-16T13:00:00Z",
    }

    assert pipeline.process_tintim(_job("tintim", body)) == "updated"
    first = list(_rows(sheets)[1])
    assert pipeline.process_tintim(_job("tintim", body, attempt=2)) == "updated"

    assert len(_rows(sheets)) == 2
    second = _rows(sheets)[1]
    assert second == first
    assert (second[4], second[5], second[7]) == ("16/10/2026", "R$ 1500,00", "Comprou")
    assert second[8:10] == ["ok", "ok"]
