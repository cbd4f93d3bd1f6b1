import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from clubsync_api.core.settings import settings
from clubsync_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.crm import build_crm_client
from .services.crm_sync import CrmSyncQueueProcessor
from .workers import EnrollmentExpirationWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    crm_client = getattr(app.state, "crm_client", None) or build_crm_client(settings)
    processor = CrmSyncQueueProcessor(
        session_factory=_session_factory,
        crm_client=crm_client,
        poll_interval_seconds=settings.crm_sync_poll_interval_seconds,
        batch_size=settings.crm_sync_batch_size,
    )
    expiration_worker = EnrollmentExpirationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.enrollment_expiration_interval_seconds,
    )

    app.state.crm_client = crm_client
    app.state.crm_sync_processor = processor
    app.state.enrollment_expiration_worker = expiration_worker
    worker_task: asyncio.Task | None = None

    if settings.crm_sync_worker_enabled:
        worker_task = asyncio.create_task(processor.start())
        app.state.crm_sync_worker_task = worker_task
        logger.info("CRM sync worker enabled", poll_interval=processor.poll_interval, batch_size=processor.batch_size)
    else:
        app.state.crm_sync_worker_task = None
        logger.info(
            "CRM sync worker disabled",
            reason="crm_sync_worker_enabled is false",
        )

    expiration_enabled = settings.enrollment_expiration_worker_enabled
    if expiration_enabled:
        expiration_worker.start()
        logger.info(
            "Enrollment expiration worker enabled",
            interval_seconds=expiration_worker.interval_seconds,
        )
    else:
        logger.info(
            "Enrollment expiration worker disabled",
            reason="enrollment_expiration_worker_enabled is false",
        )

    try:
        yield
    finally:
        if processor.is_running:
            processor.stop()
        if worker_task:
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                logger.debug("CRM sync worker task cancelled")
        if expiration_enabled and expiration_worker.is_running:
            await expiration_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the ClubSync FastAPI service."""
    configure_logging(
        service_name=settings.otel_service_name,
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="ClubSync API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(app, service_version=APP_VERSION)

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
