from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from leadsync.config import settings
from leadsync.db import supabase
from leadsync.observability import configure_logging, log_event
from leadsync.routers import admin, webhooks
from leadsync.services import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    audit_executor = None
    services = getattr(app.state, "services", None)
    if services is None:
        audit_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="audit")
        services = build_services(settings, supabase, audit_executor=audit_executor)
        app.state.services = services
    if settings.workers_enabled:
        services.dispatcher.recover(services.audit.unfinished_deliveries())
        services.dispatcher.start()
    log_event("service_started", workers_enabled=settings.workers_enabled, audit_enabled=services.audit.enabled)
    try:
        yield
    finally:
        services.dispatcher.stop()
        if audit_executor is not None:
            audit_executor.shutdown(wait=True)
        log_event("service_stopped")


app = FastAPI(title="Lead Sync Engine", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "leadsync-engine"}


@app.get("/health")
async def health(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "starting"}
    return {
        "status": "healthy",
        "tenants": len(services.resolver.tenants()),
        "queue_depth": services.dispatcher.total_depth(),
        "integrations": {
            "audit_store": services.audit.enabled,
            "alerts": services.alerts.configured,
            "kommo_api": bool(settings.kommo_access_token),
        },
    }
