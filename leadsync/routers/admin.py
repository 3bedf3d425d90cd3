from __future__ import annotations

import hmac
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from leadsync.dispatcher import Job
from leadsync.models.tenants import TenantSummary
from leadsync.models.webhooks import (
    DeadLetterBulkRetryResponse,
    DeadLetterItem,
    DeadLetterRemoveResponse,
    DeadLetterRetryResponse,
    LaneStats,
    TraceDetailResponse,
    TraceRetryRequest,
    TraceRetryResponse,
    TrailStep,
)
from leadsync.observability import incr_metric, log_event, metrics_snapshot, persist_metrics_snapshot
from leadsync.services import Services, get_services


router = APIRouter(prefix="/api/admin", tags=["admin"])

LaneParam = Literal["tintim", "kommo"]
_RETRYABLE_TRACE_STATUSES = {"failed", "dead_letter", "queued", "processing"}


def require_admin_secret(
    request: Request,
    services: Services = Depends(get_services),
    x_admin_secret: str | None = Header(default=None),
) -> None:
    configured_secret = services.settings.admin_api_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin secret is not configured",
        )
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, configured_secret):
        incr_metric("admin.auth_failed")
        log_event("admin_auth_failed", request_id=getattr(request.state, "request_id", None))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid admin secret",
        )


def _dead_letter_item(job: Job) -> DeadLetterItem:
    return DeadLetterItem(
        id=job.id,
        lane=job.lane,
        kind=job.kind,
        trace_id=job.trace_id,
        attempt_count=job.attempt_count,
        enqueued_at=job.enqueued_at,
        last_error=job.last_error,
        payload=job.payload,
    )


@router.get("/queues", response_model=list[LaneStats], dependencies=[Depends(require_admin_secret)])
async def queue_stats(services: Services = Depends(get_services)):
    return [LaneStats(**stats) for stats in services.dispatcher.stats()]


@router.get("/dead-letters", response_model=list[DeadLetterItem], dependencies=[Depends(require_admin_secret)])
async def list_dead_letters(lane: LaneParam | None = None, services: Services = Depends(get_services)):
    lanes = [services.dispatcher.lane(lane)] if lane else services.dispatcher.lanes
    return [_dead_letter_item(job) for item in lanes for job in item.dead_letters()]


@router.post(
    "/dead-letters/{lane}/retry-all",
    response_model=DeadLetterBulkRetryResponse,
    dependencies=[Depends(require_admin_secret)],
)
async def retry_all_dead_letters(lane: LaneParam, request: Request, services: Services = Depends(get_services)):
    jobs = services.dispatcher.lane(lane).retry_all_dead_letters()
    for job in jobs:
        services.audit.update_delivery(job.trace_id, status="queued", reason="dead_letter_retry")
    log_event("dead_letters_requeued", request_id=getattr(request.state, "request_id", None), lane=lane, count=len(jobs))
    return DeadLetterBulkRetryResponse(lane=lane, requeued=len(jobs), job_ids=[job.id for job in jobs])


@router.post(
    "/dead-letters/{lane}/{job_id}/retry",
    response_model=DeadLetterRetryResponse,
    dependencies=[Depends(require_admin_secret)],
)
async def retry_dead_letter(lane: LaneParam, job_id: str, services: Services = Depends(get_services)):
    job = services.dispatcher.lane(lane).retry_dead_letter(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    services.audit.update_delivery(job.trace_id, status="queued", reason="dead_letter_retry")
    return DeadLetterRetryResponse(status="requeued", lane=lane, job_id=job.id, trace_id=job.trace_id)


@router.delete(
    "/dead-letters/{lane}/{job_id}",
    response_model=DeadLetterRemoveResponse,
    dependencies=[Depends(require_admin_secret)],
)
async def remove_dead_letter(lane: LaneParam, job_id: str, services: Services = Depends(get_services)):
    if not services.dispatcher.lane(lane).remove_dead_letter(job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    return DeadLetterRemoveResponse(status="removed", lane=lane, job_id=job_id)


@router.post("/tenants/reload", response_model=list[TenantSummary], dependencies=[Depends(require_admin_secret)])
async def reload_tenants(services: Services = Depends(get_services)):
    services.resolver.invalidate()
    services.store.invalidate()
    return [
        TenantSummary(id=t.id, name=t.name, sheet_naming_mode=t.sheet_naming_mode, active=t.active)
        for t in services.resolver.tenants()
    ]


@router.get("/trail/{trace_id}", response_model=TraceDetailResponse, dependencies=[Depends(require_admin_secret)])
async def get_trace(trace_id: str, services: Services = Depends(get_services)):
    delivery = services.audit.delivery(trace_id)
    steps = services.audit.trail_steps(trace_id)
    if delivery is None and not steps:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trace not found")
    return TraceDetailResponse(
        trace_id=trace_id,
        delivery=delivery,
        steps=[TrailStep.model_validate(step) for step in steps],
    )


@router.post("/retry/{trace_id}", response_model=TraceRetryResponse, dependencies=[Depends(require_admin_secret)])
async def retry_trace(
    trace_id: str,
    data: TraceRetryRequest | None = None,
    services: Services = Depends(get_services),
):
    delivery = services.audit.delivery(trace_id)
    if delivery is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trace not found")
    force = bool(data and data.force)
    if delivery.get("status") not in _RETRYABLE_TRACE_STATUSES and not force:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "type": "not_retryable",
                "status": delivery.get("status"),
                "message": "Delivery already finished; pass force=true to replay",
            },
        )
    payload = delivery.get("payload")
    lane = delivery.get("source")
    if lane not in ("tintim", "kommo") or not isinstance(payload, dict) or "body" not in payload:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Stored delivery cannot be replayed")
    job = services.dispatcher.enqueue(
        lane,
        delivery.get("job_kind") or f"{lane}.webhook",
        payload,
        trace_id=trace_id,
        recovered=True,
    )
    services.audit.update_delivery(trace_id, status="queued", reason="manual_retry")
    incr_metric("admin.trace.retried", lane=lane)
    return TraceRetryResponse(status="requeued", lane=lane, job_id=job.id, trace_id=trace_id)


@router.get("/metrics", dependencies=[Depends(require_admin_secret)])
async def get_metrics(prefix: str | None = None):
    return {"counters": metrics_snapshot(prefix)}


@router.post("/metrics/persist", dependencies=[Depends(require_admin_secret)])
async def persist_metrics(request: Request, reset: bool = False, services: Services = Depends(get_services)):
    if services.db is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="audit store is not configured")
    persisted = persist_metrics_snapshot(
        supabase_client=services.db,
        source="admin",
        request_id=getattr(request.state, "request_id", None),
        queues=services.dispatcher.stats(),
        reset_after_persist=reset,
    )
    return {"persisted": persisted}
