"""
IPN Gateway - inbound payment notifications from banks and mobile-money providers.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from ipngate import __version__
from ipngate.config import get_settings
from ipngate.api.router import api_router
from ipngate.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("ipngate")


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


def _start_workers() -> list[asyncio.Task]:
    from ipngate.workers.dispatch_retry import run_dispatch_retry_worker
    from ipngate.workers.pipeline_sweeper import run_pipeline_sweeper
    from ipngate.workers.queue_processor import run_queue_processor

    return [
        asyncio.create_task(run_pipeline_sweeper(), name="pipeline_sweeper"),
        asyncio.create_task(run_dispatch_retry_worker(), name="dispatch_retry"),
        asyncio.create_task(run_queue_processor(), name="queue_processor"),
    ]


async def _stop_workers(tasks: list[asyncio.Task], timeout: float = 10.0) -> None:
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        logger.warning("%d workers did not stop within %.0fs", len(pending), timeout)
        await asyncio.gather(*pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("IPN Gateway starting up (env=%s)", settings.app_env)

    if not settings.dashboard_jwt_secret:
        logger.warning(
            "DASHBOARD_JWT_SECRET not set - falling back to APP_SECRET_KEY. "
            "Set a dedicated JWT secret for production."
        )
    if settings.app_env == "production" and settings.allow_unsigned_webhooks:
        logger.warning("ALLOW_UNSIGNED_WEBHOOKS=true in production - unsigned IPNs are accepted")

    _init_sentry(settings)

    worker_tasks = _start_workers()
    logger.info("Started %d background workers", len(worker_tasks))

    yield

    logger.info("IPN Gateway shutting down - stopping %d workers...", len(worker_tasks))
    await _stop_workers(worker_tasks)
    logger.info("IPN Gateway shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="IPN Gateway",
        description="Inbound payment notification ingestion, normalization and monitoring",
        version=__version__,
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["http://localhost:3000", "http://localhost:5173", settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (added after CORS so it wraps every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
