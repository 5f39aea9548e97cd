"""wabridge – Multi-tenant WhatsApp Gateway.

Thin HTTP surface over the session registry: start/stop a tenant's
connection, send, broadcast, read stats and record sales. Everything else
happens on the connection event pumps and the background loops started in
the lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from wabridge.core.db import run_migrations
from wabridge.core.errors import NotFoundError, PersistenceError, TransportError
from wabridge.core.instrumentation import router as metrics_router
from wabridge.core.instrumentation import setup_logging
from wabridge.core.maintenance import maintenance_loop
from wabridge.gateway.admin import router as admin_router
from wabridge.gateway.dependencies import Gateway, get_gateway
from wabridge.gateway.schemas import (
    BroadcastRequest,
    BroadcastResponse,
    SaleRequest,
    SendMessageRequest,
    SessionState,
    StartSessionRequest,
)
from wabridge.integrations.broadcast import BroadcastCriterion

logger = structlog.get_logger()

VERSION = "1.0.0"

settings = get_settings()


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:3000"]


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return
    if settings.auth_secret in {"", "change-me-long-random-secret", "changeme", "password123"}:
        raise RuntimeError("Refusing startup in production due to weak/default secrets.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: restore sessions on startup, flush state on shutdown."""
    setup_logging(settings.log_level)
    _enforce_startup_guards()
    run_migrations()
    gw = get_gateway()
    background_tasks: list[asyncio.Task] = []

    restored = gw.stats.load()
    logger.info("wabridge.gateway.startup", version=VERSION, env=settings.environment, stats_restored=restored)
    try:
        await gw.bus.connect()
    except Exception:
        logger.warning("wabridge.gateway.redis_unavailable", msg="Starting without Redis")

    background_tasks.append(asyncio.create_task(gw.stats.flush_loop(settings.stats_flush_interval)))
    background_tasks.append(asyncio.create_task(gw.dedup.run_sweeper()))
    background_tasks.append(asyncio.create_task(gw.spam_guard.run_sweeper()))
    background_tasks.append(
        asyncio.create_task(gw.scheduled_broadcasts.run(settings.scheduled_broadcast_interval))
    )
    background_tasks.append(
        asyncio.create_task(maintenance_loop(gw.persistence, settings.message_retention_days))
    )
    background_tasks.append(asyncio.create_task(gw.sessions.recover_all()))

    yield
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    await gw.sessions.shutdown()
    await gw.broadcasts.drain()
    gw.stats.flush()
    await gw.bus.disconnect()
    logger.info("wabridge.gateway.shutdown")


app = FastAPI(
    title="wabridge Gateway",
    description="Multi-tenant WhatsApp gateway – sessions, auto-replies, broadcasts and stats",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(metrics_router)
app.include_router(admin_router)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TransportError)
async def _transport_failed(request: Request, exc: TransportError) -> JSONResponse:
    logger.warning("wabridge.gateway.transport_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def _persistence_failed(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("wabridge.gateway.persistence_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


# ──────────────────────────────────────────
# Health
# ──────────────────────────────────────────

@app.get("/health")
async def health_check(gw: Gateway = Depends(get_gateway)) -> dict[str, Any]:
    """Health endpoint – returns system status."""
    redis_ok = await gw.bus.health_check()
    return {
        "status": "ok" if redis_ok else "degraded",
        "service": "wabridge-gateway",
        "version": VERSION,
        "redis": "connected" if redis_ok else "disconnected",
        "sessions": len(gw.sessions.tenants()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ──────────────────────────────────────────
# Sessions
# ──────────────────────────────────────────

@app.post("/sessions/{tenant_id}/start", response_model=SessionState)
async def start_session(
    tenant_id: str,
    body: StartSessionRequest | None = None,
    gw: Gateway = Depends(get_gateway),
) -> SessionState:
    webhook_url = body.webhook_url if body else None
    return await gw.sessions.activate(tenant_id, webhook_url)


@app.get("/sessions/{tenant_id}/status", response_model=SessionState)
async def session_status(tenant_id: str, gw: Gateway = Depends(get_gateway)) -> SessionState:
    return gw.sessions.status_of(tenant_id)


@app.delete("/sessions/{tenant_id}", response_model=SessionState)
async def stop_session(tenant_id: str, gw: Gateway = Depends(get_gateway)) -> SessionState:
    return await gw.sessions.deactivate(tenant_id)


@app.post("/sessions/{tenant_id}/send")
async def send_message(
    tenant_id: str,
    body: SendMessageRequest,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, Any]:
    result = await gw.sessions.send_text(tenant_id, body.to, body.text)
    return {"status": "sent", **result}


@app.post("/sessions/{tenant_id}/broadcast", response_model=BroadcastResponse)
async def broadcast(
    tenant_id: str,
    body: BroadcastRequest,
    gw: Gateway = Depends(get_gateway),
) -> BroadcastResponse:
    criterion = BroadcastCriterion(label=body.target_label, manual_numbers=body.manual_numbers)
    result = await gw.broadcasts.dispatch(tenant_id, criterion, body.message)
    return BroadcastResponse(accepted=result.accepted)


@app.get("/sessions/{tenant_id}/stats")
async def session_stats(tenant_id: str, gw: Gateway = Depends(get_gateway)) -> dict[str, Any]:
    return gw.stats.snapshot(tenant_id)


@app.post("/sessions/{tenant_id}/sales", status_code=201)
async def record_sale(
    tenant_id: str,
    body: SaleRequest,
    gw: Gateway = Depends(get_gateway),
) -> dict[str, Any]:
    items = [item.model_dump() for item in body.items]
    customer_jid = await gw.sales.record(tenant_id, body.customer_jid, body.customer_name, items, paid=body.paid)
    return {"status": "recorded", "customer_jid": customer_jid, "items": len(items)}
