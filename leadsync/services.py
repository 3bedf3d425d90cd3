from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from leadsync.alerts import AlertChannel
from leadsync.audit import AuditTrail
from leadsync.config import Settings
from leadsync.dispatcher import Dispatcher, Job, JobLane
from leadsync.domain.errors import ExhaustedRetries
from leadsync.domain.events import SOURCE_KOMMO, SOURCE_TINTIM
from leadsync.guards import DedupGuard, RateLimiter
from leadsync.pipeline import LeadPipeline
from leadsync.providers.kommo.client import KommoContact, fetch_lead_contact
from leadsync.providers.sheets.client import SheetsClient, build_gspread_client
from leadsync.providers.sheets.store import LeadSheetStore
from leadsync.tenants import FileTenantStore, SupabaseTenantStore, TenantResolver


@dataclass
class Services:
    settings: Settings
    resolver: TenantResolver
    dedup: DedupGuard
    rate_limiter: RateLimiter
    audit: AuditTrail
    alerts: AlertChannel
    store: LeadSheetStore
    pipeline: LeadPipeline
    dispatcher: Dispatcher
    db: Any = None


def build_services(
    config: Settings,
    supabase_client: Any,
    *,
    audit_executor: Executor | None = None,
    sheets_client: SheetsClient | None = None,
    alerts: AlertChannel | None = None,
) -> Services:
    resolver = TenantResolver(
        SupabaseTenantStore(supabase_client) if supabase_client is not None else None,
        fallback=FileTenantStore(config.tenants_file),
        refresh_interval_seconds=config.tenant_refresh_interval_seconds,
    )
    audit = AuditTrail(supabase_client, executor=audit_executor)
    alerts = alerts or AlertChannel(
        config.telegram_bot_token,
        config.telegram_chat_id,
        cooldown_seconds=config.alert_cooldown_seconds,
        timeout_seconds=config.alert_timeout_seconds,
    )
    store = LeadSheetStore(
        sheets_client
        or SheetsClient(
            lambda: build_gspread_client(config),
            max_retries=config.sheets_max_retries,
            retry_base_seconds=config.sheets_retry_base_seconds,
            retry_max_seconds=config.sheets_retry_max_seconds,
        ),
        tz_name=config.sheets_timezone,
        max_attempts=config.sheets_max_retries,
    )

    def _kommo_lookup(subdomain: str | None, lead_id: str) -> KommoContact | None:
        target = subdomain or config.kommo_subdomain
        if not target or not config.kommo_access_token:
            return None
        return fetch_lead_contact(
            subdomain=target,
            access_token=config.kommo_access_token,
            lead_id=lead_id,
            timeout_seconds=config.kommo_api_timeout_seconds,
        )

    pipeline = LeadPipeline(
        resolver=resolver,
        store=store,
        audit=audit,
        alerts=alerts,
        kommo_lookup=_kommo_lookup,
        tz_name=config.sheets_timezone,
    )

    def _on_dead_letter(job: Job, exc: ExhaustedRetries) -> None:
        audit.record_dead_letter(
            trace_id=job.trace_id,
            lane=job.lane,
            job_id=job.id,
            attempts=exc.attempts,
            error=exc.last_error,
        )
        alerts.send("dead_letter", f"{job.lane} job {job.id} (trace {job.trace_id}) dead-lettered: {exc.last_error}")

    def _on_backlog(lane: str, depth: int) -> None:
        alerts.send(f"queue_backlog_{lane}", f"{lane} queue depth is {depth}")

    lane_defaults = dict(
        max_attempts=config.queue_max_attempts,
        backoff_base_seconds=config.queue_backoff_base_seconds,
        backoff_max_seconds=config.queue_backoff_max_seconds,
        backlog_threshold=config.queue_backlog_alert_threshold,
        on_dead_letter=_on_dead_letter,
        on_backlog=_on_backlog,
    )
    dispatcher = Dispatcher(
        [
            JobLane(
                SOURCE_TINTIM,
                pipeline.handle,
                concurrency=config.tintim_lane_concurrency,
                rate_per_second=config.tintim_lane_rate_per_second,
                **lane_defaults,
            ),
            JobLane(
                SOURCE_KOMMO,
                pipeline.handle,
                concurrency=config.kommo_lane_concurrency,
                rate_per_second=config.kommo_lane_rate_per_second,
                **lane_defaults,
            ),
        ]
    )
    return Services(
        settings=config,
        resolver=resolver,
        dedup=DedupGuard(config.dedup_window_seconds),
        rate_limiter=RateLimiter(
            config.webhook_rate_limit_window_seconds,
            config.webhook_rate_limit_max_requests,
            sweep_interval_seconds=config.webhook_rate_limit_sweep_interval_seconds,
        ),
        audit=audit,
        alerts=alerts,
        store=store,
        pipeline=pipeline,
        dispatcher=dispatcher,
        db=supabase_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
