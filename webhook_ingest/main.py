"""
Webhook Ingest - durable, idempotent Stripe webhook ingestion.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from webhook_ingest.api.router import api_router
from webhook_ingest.config import get_settings
from webhook_ingest.database import dispose_engine, get_session_factory
from webhook_ingest.services.container import WebhookServices, build_services
from webhook_ingest.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)
from webhook_ingest.utils.redis import close_redis
from webhook_ingest.workers.retry_worker import run_retry_worker

logger = logging.getLogger("webhook_ingest")

SHUTDOWN_TIMEOUT_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment=settings.app_env,
        )
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    services: Optional[WebhookServices] = getattr(app.state, "services", None)
    owns_services = services is None
    if owns_services:
        settings = get_settings()
        services = build_services(settings, get_session_factory())
        app.state.services = services
    settings = services.settings
    logger.info("Webhook ingest starting up (env=%s)", settings.app_env)

    if not settings.admin_jwt_secret:
        logger.warning("ADMIN_JWT_SECRET not set - stats and event endpoints are disabled")

    _init_sentry(settings)

    worker_tasks: list[asyncio.Task] = []
    if settings.retry_worker_enabled:
        worker_tasks.append(asyncio.create_task(
            run_retry_worker(services.scheduler, settings.retry_poll_interval_seconds)
        ))
    else:
        logger.info("Retry worker disabled (RETRY_WORKER_ENABLED=false)")

    yield

    # Graceful shutdown - let in-flight dispatches finish, then stop workers
    logger.info(
        "Webhook ingest shutting down - %d dispatches in flight, stopping %d workers...",
        services.ingest.in_flight, len(worker_tasks),
    )
    await services.ingest.drain(SHUTDOWN_TIMEOUT_SECONDS)
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    if owns_services:
        await close_redis()
        await dispose_engine()
    logger.info("Webhook ingest shutdown complete")


def create_app(services: Optional[WebhookServices] = None) -> FastAPI:
    """
    Application factory. Pass services to run against an already-built
    stack (tests); otherwise the lifespan builds one from settings.
    """
    settings = services.settings if services is not None else get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="Webhook Ingest",
        description="Durable, idempotent Stripe webhook ingestion with retries",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        application.state.services = services

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "Stripe-Signature",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
