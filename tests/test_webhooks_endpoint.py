import hashlib
import hmac
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from conftest import build_test_services
from leadsync.domain.periods import monthly_sheet_name
from leadsync.main import app
from leadsync.services import get_services


SID = "sheet-doc-1"


def _client(services) -> TestClient:
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


def _cleanup():
    app.dependency_overrides.clear()


def _current_rows(sheets):
    return sheets.books[SID][monthly_sheet_name(datetime.now(timezone.utc))]


def _sign(raw: bytes, secret: str = "kommo-secret") -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha1).hexdigest()


TINTIM_BODY = {
    "instanceId": "inst-1",
    "chatName": "Maria",
    "phone": "5511992083378",
    "status": {"name": "Fez Contato"},
}

KOMMO_FORM = (
    "account[id]=31234567&account[subdomain]=acme"
    "&leads[add][0][id]=9001&leads[add][0][name]=Lead"
    "&leads[add][0][custom_fields][0][name]=Fonte+de+prospec%C3%A7%C3%A3o"
    "&leads[add][0][custom_fields][0][values][0][value]=Google+Ads"
    "&contacts[add][0][id]=55&contacts[add][0][name]=Jo%C3%A3o"
    "&contacts[add][0][custom_fields][0][code]=PHONE"
    "&contacts[add][0][custom_fields][0][values][0][value]=%2B55+11+98888-7777"
    "&contacts[add][0][linked_leads_id][9001]=9001"
).encode("utf-8")


def test_tintim_delivery_is_acknowledged_then_processed():
    services, db, sheets = build_test_services()
    client = _client(services)
    try:
        response = client.post("/webhook/tintim", json=TINTIM_BODY)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "queued"
        assert body["job_id"]
        assert response.headers["X-Request-ID"]

        (delivery,) = db.tables["webhook_events"]
        assert delivery["trace_id"] == body["trace_id"]
        assert delivery["status"] == "queued"
        assert delivery["job_kind"] == "tintim.webhook"
        assert delivery["tenant_id"] == "tenant-1"
        assert delivery["payload"]["body"] == TINTIM_BODY
        assert services.dispatcher.lane("tintim").depth == 1

        assert services.dispatcher.drain() == 1
        rows = _current_rows(sheets)
        assert rows[-1][0] == "Maria (Auto)"
        assert rows[-1][1] == "(11)99208-3378"
        assert db.tables["webhook_events"][0]["status"] == "processed"
    finally:
        _cleanup()


def test_tintim_duplicate_inside_window_is_ignored():
    services, db, _ = build_test_services()
    client = _client(services)
    try:
        first = client.post("/webhook/tintim", json=TINTIM_BODY)
        second = client.post("/webhook/tintim", json=TINTIM_BODY)
        assert first.json()["status"] == "queued"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate_ignored"
        assert services.dispatcher.total_depth() == 1
        assert [row["status"] for row in db.tables["webhook_events"]] == ["queued", "duplicate_ignored"]
    finally:
        _cleanup()


def test_tintim_rejections_and_unbound_tenant_are_acknowledged():
    services, db, _ = build_test_services()
    client = _client(services)
    try:
        from_me = client.post("/webhook/tintim", json=dict(TINTIM_BODY, fromMe=True))
        assert from_me.status_code == 200
        assert from_me.json()["status"] == "rejected"
        assert from_me.json()["reason"] == "from_me"

        empty = client.post("/webhook/tintim", json={})
        assert empty.json()["status"] == "rejected"
        assert empty.json()["reason"] == "invalid"

        unknown = client.post("/webhook/tintim", json=dict(TINTIM_BODY, instanceId="other"))
        assert unknown.status_code == 200
        assert unknown.json()["status"] == "no_client"
        assert unknown.json()["reason"] == "no_client"

        assert services.dispatcher.total_depth() == 0
        assert [row["status"] for row in db.tables["webhook_events"]] == ["rejected", "rejected", "no_client"]
    finally:
        _cleanup()


def test_tintim_invalid_json_is_bad_request():
    services, _, _ = build_test_services()
    client = _client(services)
    try:
        response = client.post(
            "/webhook/tintim",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
    finally:
        _cleanup()


def test_webhook_rate_limit_per_ip():
    services, _, _ = build_test_services(webhook_rate_limit_max_requests=1)
    client = _client(services)
    try:
        first = client.post("/webhook/tintim", json=TINTIM_BODY, headers={"X-Forwarded-For": "203.0.113.9"})
        second = client.post("/webhook/tintim", json=TINTIM_BODY, headers={"X-Forwarded-For": "203.0.113.9"})
        other_ip = client.post(
            "/webhook/tintim",
            json=dict(TINTIM_BODY, phone="5511977776666"),
            headers={"X-Forwarded-For": "198.51.100.1"},
        )
        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["detail"]["type"] == "rate_limited"
        assert other_ip.status_code == 200
    finally:
        _cleanup()


def test_kommo_signed_form_delivery_is_queued_and_processed():
    services, db, sheets = build_test_services()
    client = _client(services)
    try:
        response = client.post(
            "/webhook/kommo",
            content=KOMMO_FORM,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Signature": _sign(KOMMO_FORM),
            },
        )
        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        assert db.tables["webhook_events"][0]["event_type"] == "add"

        services.dispatcher.drain()
        rows = _current_rows(sheets)
        assert rows[-1][0] == "João (Kommo)"
        assert rows[-1][2] == "Google Ads"
    finally:
        _cleanup()


def test_kommo_signature_prefix_is_accepted():
    services, _, _ = build_test_services()
    client = _client(services)
    try:
        response = client.post(
            "/webhook/kommo",
            content=KOMMO_FORM,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Signature": "sha1=" + _sign(KOMMO_FORM).upper(),
            },
        )
        assert response.status_code == 200
    finally:
        _cleanup()


def test_kommo_missing_or_invalid_signature_is_unauthorized():
    services, db, _ = build_test_services()
    client = _client(services)
    try:
        missing = client.post(
            "/webhook/kommo",
            content=KOMMO_FORM,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        invalid = client.post(
            "/webhook/kommo",
            content=KOMMO_FORM,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Signature": _sign(KOMMO_FORM, secret="wrong"),
            },
        )
        assert missing.status_code == 401
        assert missing.json()["detail"] == "Missing webhook signature"
        assert invalid.status_code == 401
        assert invalid.json()["detail"] == "Invalid webhook signature"
        assert db.tables["webhook_events"] == []
        assert services.dispatcher.total_depth() == 0
    finally:
        _cleanup()


def test_kommo_without_configured_secret_skips_verification():
    services, _, _ = build_test_services(kommo_client_secret=None)
    client = _client(services)
    try:
        response = client.post(
            "/webhook/kommo",
            content=KOMMO_FORM,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "queued"
    finally:
        _cleanup()


def test_kommo_json_delivery_and_empty_events():
    services, _, _ = build_test_services(kommo_client_secret=None)
    client = _client(services)
    try:
        payload = {"account": {"id": "31234567"}, "leads": {"status": [{"id": "9001", "status_id": "142"}]}}
        queued = client.post("/webhook/kommo", json=payload)
        assert queued.json()["status"] == "queued"

        empty = client.post(
            "/webhook/kommo",
            content=b"account[id]=31234567",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert empty.json()["status"] == "ignored"
        assert empty.json()["reason"] == "no_events"

        unknown = client.post("/webhook/kommo", json=dict(payload, account={"id": "000"}))
        assert unknown.json()["status"] == "no_client"
    finally:
        _cleanup()


def test_health_reports_queue_depth():
    services, _, _ = build_test_services()
    client = TestClient(app)
    app.state.services = services
    try:
        services.dispatcher.enqueue("tintim", "tintim.webhook", {"body": dict(TINTIM_BODY)})
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["tenants"] == 1
        assert body["queue_depth"] == 1
        assert body["integrations"]["audit_store"] is True
        assert body["integrations"]["alerts"] is False
    finally:
        del app.state.services


def test_tintim_untagged_sale_after_untagged_creation_is_not_deduplicated():
    services, db, _ = build_test_services()
    client = _client(services)
    try:
        created = client.post("/webhook/tintim", json=TINTIM_BODY)
        sold = client.post(
            "/webhook/tintim",
            json={"instanceId": "inst-1", "phone": "5511992083378", "status": "Comprou", "sale_amount": 1500},
        )
        assert created.json()["status"] == "queued"
        assert sold.json()["status"] == "queued"
        assert services.dispatcher.total_depth() == 2
        assert [row["status"] for row in db.tables["webhook_events"]] == ["queued", "queued"]
    finally:
        _cleanup()


def test_kommo_form_body_that_is_not_utf8_is_bad_request():
    services, db, _ = build_test_services(kommo_client_secret=None)
    client = TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides[get_services] = lambda: services
    try:
        response = client.post(
            "/webhook/kommo",
            content=b"account[id]=\xff\xfe&leads[add][0][id]=9001",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid form payload"
        assert services.dispatcher.total_depth() == 0
        assert db.tables["webhook_events"] == []
    finally:
        _cleanup()
