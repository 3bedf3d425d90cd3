from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


WebhookStatus = Literal["queued", "duplicate_ignored", "rejected", "no_client", "ignored"]
LaneName = Literal["tintim", "kommo"]


class WebhookAck(BaseModel):
    status: WebhookStatus
    trace_id: str
    job_id: str | None = None
    reason: str | None = None


class DeadLetterItem(BaseModel):
    id: str
    lane: LaneName
    kind: str
    trace_id: str
    attempt_count: int
    enqueued_at: datetime
    last_error: str | None = None
    payload: dict[str, Any] | None = None


class DeadLetterRetryResponse(BaseModel):
    status: Literal["requeued"]
    lane: LaneName
    job_id: str
    trace_id: str


class DeadLetterBulkRetryResponse(BaseModel):
    lane: LaneName
    requeued: int
    job_ids: list[str]


class DeadLetterRemoveResponse(BaseModel):
    status: Literal["removed"]
    lane: LaneName
    job_id: str


class LaneStats(BaseModel):
    lane: LaneName
    queued: int
    active: int
    dead_letter: int
    workers: int
    total_completed: int
    total_failed: int
    total_retried: int
    total_dead_letter: int


class TraceRetryRequest(BaseModel):
    force: bool = False


class TraceRetryResponse(BaseModel):
    status: Literal["requeued"]
    lane: LaneName
    job_id: str
    trace_id: str


class TrailStep(BaseModel):
    step_order: int
    step_name: str
    status: str
    detail: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int | None = None
    created_at: datetime | None = None


class TraceDetailResponse(BaseModel):
    trace_id: str
    delivery: dict[str, Any] | None = None
    steps: list[TrailStep]
