from __future__ import annotations

import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from api.v1.payments_route import router as v1_payments_route_router
from api.v1.webhooks_route import router as v1_webhooks_route_router
from core.errors import AppException, ErrorCode
from core.logging_config import setup_logging
from core.payments.manager import PaymentManager
from core.queue.provider import QueueProvider
from core.response_envelope import (
    app_exception_response,
    apply_response_documentation,
    document_response,
    error_response,
    http_exception_response,
)
from core.scheduler import build_scheduler
from core.settings import Settings, get_settings
from core.validation_errors import format_validation_error_details
from repositories.mongo_store import MongoDocumentStore
from repositories.store import DocumentStore
from services.outbox_service import OutboxRelay
from services.payment_service import PaymentOrchestrator

logger = structlog.get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestTimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response


def _default_queue() -> QueueProvider:
    from celery_worker import celery_app
    from core.queue.celery_provider import CeleryQueueProvider

    return CeleryQueueProvider(celery_app=celery_app)


def install_exception_handlers(app: FastAPI, *, include_error_details: bool) -> None:
    @app.exception_handler(AppException)
    async def custom_app_exception_handler(request: Request, exc: AppException):
        return app_exception_response(exc=exc, request=request)

    @app.exception_handler(HTTPException)
    async def custom_http_exception_handler(request: Request, exc: HTTPException):
        return http_exception_response(exc=exc, request=request)

    @app.exception_handler(RequestValidationError)
    async def custom_validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(
            status_code=422,
            message="Validation error",
            code=ErrorCode.VALIDATION_FAILED.value,
            details=format_validation_error_details(exc.errors()),
            request=request,
        )

    @app.exception_handler(Exception)
    async def custom_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", path=request.url.path)
        return error_response(
            status_code=500,
            message="Internal Server Error",
            code=ErrorCode.INTERNAL_ERROR.value,
            details=str(exc) if include_error_details else None,
            request=request,
        )


def create_app(
    *,
    settings: Settings | None = None,
    store: DocumentStore | None = None,
    providers: PaymentManager | None = None,
    queue: QueueProvider | None = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Build the API. Anything not passed in is created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active_settings = settings or get_settings()
        setup_logging(active_settings.log_level)

        owned_store: MongoDocumentStore | None = None
        active_store = store
        if active_store is None:
            owned_store = MongoDocumentStore.from_url(active_settings.mongo_url, active_settings.db_name)
            active_store = owned_store
        await active_store.ensure_indexes()

        orchestrator = PaymentOrchestrator(
            providers=providers or PaymentManager.from_settings(active_settings),
            store=active_store,
            retry_attempts=active_settings.payment_retry_attempts,
            retry_base_delay=active_settings.payment_retry_base_delay_seconds,
        )
        relay = OutboxRelay(store=active_store, queue=queue or _default_queue())
        app.state.orchestrator = orchestrator
        app.state.outbox_relay = relay

        scheduler = None
        if run_scheduler:
            scheduler = build_scheduler(active_settings, orchestrator=orchestrator, relay=relay)
            scheduler.start()
        logger.info("application_started", env=active_settings.env, providers=[n.value for n in orchestrator.providers.names()])

        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            if owned_store is not None:
                await owned_store.close()
            logger.info("application_stopped")

    app = FastAPI(lifespan=lifespan, title="Payment Orchestration API")
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(RequestTimingMiddleware)
    cors_origins = settings.cors_origins if settings else tuple(
        item.strip() for item in os.getenv("CORS_ORIGINS", "").split(",") if item.strip()
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins) if cors_origins else ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_details = (
        settings.debug_include_error_details and not settings.is_production
        if settings
        else os.getenv("DEBUG_INCLUDE_ERROR_DETAILS", "false").lower() in {"1", "true", "yes"}
        and os.getenv("ENV", "development").lower() != "production"
    )
    install_exception_handlers(app, include_error_details=include_details)

    @app.get("/health", tags=["Health"])
    @document_response(
        message="Health check completed",
        success_example={"status": "healthy", "services": {"mongo": {"status": "healthy"}}},
    )
    async def health_check(request: Request):
        orchestrator: PaymentOrchestrator | None = getattr(request.app.state, "orchestrator", None)
        services: dict[str, dict[str, str | float]] = {}
        overall_status = "healthy"

        if orchestrator is None:
            return {
                "status": "starting",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "services": services,
                "providers": [],
            }

        start = time.perf_counter()
        try:
            await orchestrator.store.ping()
            services["store"] = {
                "status": "healthy",
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "message": "Document store ping successful",
            }
        except Exception as exc:
            overall_status = "degraded"
            services["store"] = {
                "status": "unhealthy",
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "message": str(exc),
            }

        providers = orchestrator.provider_health()
        if not any(item.configured for item in providers):
            overall_status = "degraded"

        return {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": services,
            "providers": providers,
        }

    app.include_router(v1_payments_route_router, prefix='/v1')
    app.include_router(v1_webhooks_route_router, prefix='/v1')

    apply_response_documentation(app)
    return app


app = create_app()
