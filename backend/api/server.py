"""
Settlement Webhook Server
=========================
FastAPI app in front of the SettlementEngine:
- POST /api/paystack/webhook (alias /api/payments/webhook)
- Side effects drained after the response, plus a periodic outbox worker
- Health and admin endpoints for the outbox and alerts

pip install fastapi uvicorn pydantic structlog httpx asyncpg
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import init_database
from pipeline.audit import BlackBoxAuditLog, InMemoryAuditLog
from pipeline.errors import SettlementError
from pipeline.settlement_engine import SettlementEngine, create_engine, settings
from schemas.settlement_models import WebhookOutcome
from services.notifications import HttpNotificationService, InMemoryNotificationService
from storage.document_store import InMemoryDocumentStore
from storage.postgres_store import PostgresDocumentStore
from tasks.outbox_worker import outbox_loop

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # Persistence: "memory" or "postgres"
    STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").lower()

    # Logging: "json" or "console"
    LOG_FORMAT = os.getenv("LOG_FORMAT", "console" if DEBUG else "json").lower()

    # Mail service
    NOTIFICATION_API_URL = os.getenv("NOTIFICATION_API_URL", "")
    NOTIFICATION_API_KEY = os.getenv("NOTIFICATION_API_KEY", "")


config = ServerConfig()


def configure_logging(fmt: str = config.LOG_FORMAT) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=config.DEBUG)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger().bind(component="server")


# =============================================================================
# ENGINE LIFECYCLE
# =============================================================================

async def build_engine() -> SettlementEngine:
    """Wire the engine for the configured store backend."""
    if config.STORE_BACKEND == "postgres":
        await init_database()
        store = PostgresDocumentStore()
        audit_log = BlackBoxAuditLog()
    else:
        store = InMemoryDocumentStore()
        audit_log = InMemoryAuditLog()

    if config.NOTIFICATION_API_URL:
        notifications = HttpNotificationService(config.NOTIFICATION_API_URL, config.NOTIFICATION_API_KEY)
    else:
        logger.warning("notification_api_not_configured", fallback="in_memory")
        notifications = InMemoryNotificationService()

    return create_engine(store, notifications=notifications, audit_log=audit_log)


async def shutdown_engine(engine: SettlementEngine) -> None:
    await engine.reconciler.close()
    notifications = engine.processor.orchestrator.notifications
    if isinstance(notifications, HttpNotificationService):
        await notifications.close()
    await engine.store.close()


# =============================================================================
# RESPONSES
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    store_backend: str
    gateway_configured: bool
    outbox_worker_running: bool


def error_body(error: SettlementError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": error.success, "message": error.message, "error": error.message}
    if error.details:
        body["details"] = error.details
    return body


async def run_side_effects_safely(engine: SettlementEngine, outcome: WebhookOutcome) -> None:
    """Post-response drain. Failures are left for the outbox worker."""
    try:
        await engine.run_side_effects(outcome)
    except Exception as e:
        logger.error(
            "post_response_drain_failed",
            correlation_id=outcome.reference,
            outbox_id=outcome.outbox_id,
            error=str(e),
        )


def get_engine(request: Request) -> SettlementEngine:
    return request.app.state.engine


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(engine: Optional[SettlementEngine] = None, start_worker: bool = True) -> FastAPI:
    """
    Build the app. Pass an engine to skip backend wiring (tests); otherwise
    one is built on startup from ServerConfig.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=config.ENV, store_backend=config.STORE_BACKEND)
        owns_engine = app.state.engine is None
        if owns_engine:
            app.state.engine = await build_engine()

        worker: Optional[asyncio.Task] = None
        if start_worker:
            worker = asyncio.create_task(outbox_loop(app.state.engine.processor))
        app.state.worker = worker

        yield

        logger.info("server_shutting_down")
        if worker:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        if owns_engine:
            await shutdown_engine(app.state.engine)

    app = FastAPI(
        title="Payment Settlement Engine",
        description="Gateway webhook settlement with durable side effects",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.worker = None
    app.state.started_at = datetime.utcnow()

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # WEBHOOK
    # =========================================================================

    @app.post("/api/paystack/webhook")
    @app.post("/api/payments/webhook")
    async def payment_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        engine: SettlementEngine = Depends(get_engine),
    ):
        """
        Gateway notification endpoint. Answers as soon as the settlement is
        committed; side effects run after the response.
        """
        raw_body = await request.body()
        signature = request.headers.get("x-signature") or request.headers.get("x-paystack-signature")
        referral_code = request.cookies.get(settings.REFERRAL_COOKIE_NAME)

        try:
            outcome = await engine.handle_webhook(raw_body, signature, referral_code=referral_code)
        except SettlementError as e:
            log_method = logger.error if e.status_code >= 500 else logger.warning
            log_method(
                "webhook_rejected",
                error_type=type(e).__name__,
                status_code=e.status_code,
                message=e.message,
            )
            return JSONResponse(status_code=e.status_code, content=error_body(e))
        except Exception as e:
            logger.exception("webhook_processing_error", error=str(e))
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Internal server error.", "error": "Internal server error."},
            )

        if outcome.outbox_id:
            background_tasks.add_task(run_side_effects_safely, engine, outcome)
        return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        engine: Optional[SettlementEngine] = request.app.state.engine
        worker: Optional[asyncio.Task] = request.app.state.worker
        return HealthResponse(
            status="healthy" if engine is not None else "starting",
            version=VERSION,
            uptime_seconds=(datetime.utcnow() - request.app.state.started_at).total_seconds(),
            store_backend=config.STORE_BACKEND,
            gateway_configured=bool(engine and engine.verifier.configured),
            outbox_worker_running=bool(worker and not worker.done()),
        )

    # =========================================================================
    # ADMIN
    # =========================================================================

    @app.get("/api/admin/outbox")
    async def outbox_stats(engine: SettlementEngine = Depends(get_engine)):
        return await engine.processor.stats()

    @app.post("/api/admin/outbox/drain")
    async def drain_outbox(limit: int = 50, engine: SettlementEngine = Depends(get_engine)):
        """Re-run due outbox entries now, ignoring their backoff."""
        summary = await engine.processor.drain(limit=limit, force=True)
        logger.info("manual_outbox_drain", **summary)
        return summary

    @app.get("/api/admin/alerts")
    async def recent_alerts(limit: int = 50, engine: SettlementEngine = Depends(get_engine)):
        return [alert.model_dump(mode="json") for alert in await engine.alerts.recent(limit)]

    @app.get("/api/admin/audit/{reference}")
    async def audit_trail(reference: str, engine: SettlementEngine = Depends(get_engine)):
        entries = await engine.audit.get_by_correlation_id(reference)
        return [entry.model_dump(mode="json") for entry in entries]

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
