from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from leadsync.domain.classification import classify_event
from leadsync.domain.errors import InvalidPayload, TenantNotFound
from leadsync.domain.events import SOURCE_KOMMO, SOURCE_TINTIM
from leadsync.domain.normalization import normalize_kommo_body, normalize_tintim_payload, parse_nested_form
from leadsync.models.webhooks import WebhookAck
from leadsync.observability import incr_metric, log_event
from leadsync.services import Services, get_services


router = APIRouter(prefix="/webhook", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _throttle_or_raise(services: Services, request: Request, source: str) -> None:
    ip = _client_ip(request)
    if services.rate_limiter.allow(ip):
        return
    log_event("webhook_rate_limited", level=logging.WARNING, request_id=_request_id(request), source=source, ip=ip)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={"type": "rate_limited", "source": source, "message": "Too many webhook requests"},
    )


def _verify_signature_or_raise(raw_body: bytes, signature_header: str | None, secret: str | None) -> None:
    if not secret:
        return
    if not signature_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha1).hexdigest()
    provided = signature_header.strip().lower()
    if provided.startswith("sha1="):
        provided = provided[5:]
    if not hmac.compare_digest(expected, provided):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


def _ack(
    services: Services,
    *,
    source: str,
    trace_id: str,
    status_value: str,
    payload: Any,
    request_id: str | None,
    reason: str | None = None,
    tenant_id: str | None = None,
    phone: str | None = None,
) -> WebhookAck:
    services.audit.record_delivery(
        trace_id=trace_id,
        source=source,
        status=status_value,
        payload={"body": payload, "request_id": request_id},
        tenant_id=tenant_id,
        phone=phone,
        reason=reason,
    )
    incr_metric("webhook.acknowledged", source=source, status=status_value)
    log_event(
        "webhook_acknowledged",
        request_id=request_id,
        source=source,
        trace_id=trace_id,
        status=status_value,
        reason=reason,
    )
    return WebhookAck(status=status_value, trace_id=trace_id, reason=reason)


def _enqueue(
    services: Services,
    *,
    source: str,
    trace_id: str,
    body: dict[str, Any],
    request_id: str | None,
    tenant_id: str,
    phone: str | None = None,
    event_type: str | None = None,
) -> WebhookAck:
    job_kind = f"{source}.webhook"
    job_payload = {"body": body, "request_id": request_id}
    services.audit.record_delivery(
        trace_id=trace_id,
        source=source,
        status="queued",
        payload=job_payload,
        tenant_id=tenant_id,
        phone=phone,
        event_type=event_type,
        job_kind=job_kind,
    )
    job = services.dispatcher.enqueue(source, job_kind, job_payload, trace_id=trace_id)
    incr_metric("webhook.acknowledged", source=source, status="queued")
    log_event(
        "webhook_enqueued",
        request_id=request_id,
        source=source,
        trace_id=trace_id,
        job_id=job.id,
        tenant_id=tenant_id,
    )
    return WebhookAck(status="queued", trace_id=trace_id, job_id=job.id)


@router.post("/tintim", response_model=WebhookAck)
async def tintim_webhook(request: Request, services: Services = Depends(get_services)):
    request_id = _request_id(request)
    _throttle_or_raise(services, request, SOURCE_TINTIM)
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc

    trace_id = str(uuid4())
    try:
        event = normalize_tintim_payload(payload)
    except InvalidPayload as exc:
        return _ack(
            services,
            source=SOURCE_TINTIM,
            trace_id=trace_id,
            status_value="rejected",
            payload=payload,
            request_id=request_id,
            reason=exc.reason,
        )

    try:
        tenant = services.resolver.resolve(SOURCE_TINTIM, event.tenant_hint)
    except TenantNotFound as exc:
        return _ack(
            services,
            source=SOURCE_TINTIM,
            trace_id=trace_id,
            status_value="no_client",
            payload=payload,
            request_id=request_id,
            reason=exc.reason,
            phone=event.phone,
        )

    if services.dedup.check_and_mark(event.phone, classify_event(event).value):
        return _ack(
            services,
            source=SOURCE_TINTIM,
            trace_id=trace_id,
            status_value="duplicate_ignored",
            payload=payload,
            request_id=request_id,
            tenant_id=tenant.id,
            phone=event.phone,
        )

    return _enqueue(
        services,
        source=SOURCE_TINTIM,
        trace_id=trace_id,
        body=payload,
        request_id=request_id,
        tenant_id=tenant.id,
        phone=event.phone,
        event_type=payload.get("event_type"),
    )


@router.post("/kommo", response_model=WebhookAck)
async def kommo_webhook(
    request: Request,
    services: Services = Depends(get_services),
    x_signature: str | None = Header(default=None),
):
    request_id = _request_id(request)
    _throttle_or_raise(services, request, SOURCE_KOMMO)
    raw_body = await request.body()
    _verify_signature_or_raise(raw_body, x_signature, services.settings.kommo_client_secret)

    if "application/json" in request.headers.get("content-type", ""):
        try:
            body = json.loads(raw_body or b"{}")
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    else:
        try:
            body = parse_nested_form(raw_body)
        except UnicodeDecodeError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid form payload") from exc

    trace_id = str(uuid4())
    try:
        delivery = normalize_kommo_body(body)
    except InvalidPayload as exc:
        return _ack(
            services,
            source=SOURCE_KOMMO,
            trace_id=trace_id,
            status_value="rejected",
            payload=body,
            request_id=request_id,
            reason=exc.reason,
        )
    if delivery.is_empty:
        return _ack(
            services,
            source=SOURCE_KOMMO,
            trace_id=trace_id,
            status_value="ignored",
            payload=body,
            request_id=request_id,
            reason="no_events",
        )

    try:
        tenant = services.resolver.resolve(SOURCE_KOMMO, delivery.account_id)
    except TenantNotFound as exc:
        return _ack(
            services,
            source=SOURCE_KOMMO,
            trace_id=trace_id,
            status_value="no_client",
            payload=body,
            request_id=request_id,
            reason=exc.reason,
        )

    return _enqueue(
        services,
        source=SOURCE_KOMMO,
        trace_id=trace_id,
        body=body,
        request_id=request_id,
        tenant_id=tenant.id,
        event_type=",".join(sorted({event.action for event in delivery.lead_events})) or "contacts",
    )
