"""
FastAPI Application

Main entry point for the crm-sync API.
Handles application lifecycle, pipeline wiring and router mounting.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from loguru import logger

from crm_sync import __version__
from crm_sync.analytics.recorder import MetricsRecorder
from crm_sync.analytics.sla import SLAAggregator
from crm_sync.config import Settings, get_settings
from crm_sync.pipeline.ingestion import IngestionService
from crm_sync.pipeline.manager import QueueManager
from crm_sync.pipeline.retry import RetryPolicy
from crm_sync.processors.base import ProcessorDeps
from crm_sync.processors.registry import build_default_registry
from crm_sync.repositories import (
    DiscoveryRepository,
    EventStoreRepository,
    MetricsRepository,
    QueueRepository,
    StorageContext,
    create_indexes,
    db_manager,
)
from crm_sync.services import Services
from crm_sync.utils.observability import configure_logging
from crm_sync.api.routes import (
    analytics_router,
    cron_router,
    health_router,
    metrics_router,
    queues_router,
    webhooks_router,
)


def wire_pipeline(app: FastAPI, storage: StorageContext, settings: Settings, services: Services) -> None:
    """Build repositories, processors and the queue manager into app state."""
    queue_repo = QueueRepository(storage.database)
    discovery_repo = DiscoveryRepository(storage.database)
    metrics_repo = MetricsRepository(storage.database)

    deps = ProcessorDeps(storage=storage, queue_repo=queue_repo, services=services, settings=settings)
    registry = build_default_registry(deps)
    recorder = MetricsRecorder(metrics_repo, queue_repo)
    retry_policy = RetryPolicy(settings.retry_base_delay_seconds, settings.retry_max_delay_seconds)

    app.state.storage = storage
    app.state.queue_repo = queue_repo
    app.state.discovery_repo = discovery_repo
    app.state.unhandled_store = EventStoreRepository(storage.database, "unhandled_webhooks")
    app.state.recorder = recorder
    app.state.ingestion = IngestionService(queue_repo, discovery_repo, max_attempts=settings.default_max_attempts)
    app.state.queue_manager = QueueManager(queue_repo, registry, recorder, retry_policy, settings)
    app.state.sla = SLAAggregator(queue_repo, metrics_repo, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle: startup and shutdown events.

    Startup:
    - Resolve storage (injected, in-memory, or MongoDB)
    - Create indexes
    - Wire ingestion, processors, queue manager and analytics

    Shutdown:
    - Disconnect from MongoDB if this app connected
    """
    settings: Settings = app.state.settings
    configure_logging()
    logger.info("Starting crm-sync API server...")

    storage: Optional[StorageContext] = app.state.storage
    connected = False
    if storage is None:
        if settings.storage_backend == "memory":
            logger.warning("Using in-memory storage; queue state is lost on restart")
            storage = StorageContext.in_memory(settings.mongodb_database)
        else:
            await db_manager.connect()
            connected = True
            storage = db_manager.storage()

    await create_indexes(storage.database)
    wire_pipeline(app, storage, settings, app.state.services or Services())

    logger.info("API server ready to receive webhooks")

    yield

    logger.info("Shutting down API server...")
    if connected:
        await db_manager.disconnect()
    logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[StorageContext] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Defaults to the process-wide settings
        storage: Pre-built storage (tests); resolved from settings otherwise
        services: External collaborators; HTTP clients from settings otherwise
    """
    app = FastAPI(
        title="crm-sync API",
        description="CRM webhook queue and processing pipeline with SLA analytics",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings or get_settings()
    app.state.storage = storage
    app.state.services = services

    # Mount routers
    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(cron_router)
    app.include_router(queues_router)
    app.include_router(analytics_router)
    app.include_router(metrics_router)
    return app


app = create_app()
