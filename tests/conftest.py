import datetime as dt
from unittest.mock import AsyncMock

import pytest

from crm_sync.config import Settings
from crm_sync.models.queue import QueueItem
from crm_sync.pipeline.routing import route_for
from crm_sync.processors.base import ProcessorDeps
from crm_sync.repositories import QueueRepository, StorageContext, create_indexes
from crm_sync.services import Services
from crm_sync.utils.metrics import metrics

T0 = dt.datetime(2026, 1, 15, 12, 0, tzinfo=dt.UTC)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts from an empty Prometheus registry."""
    metrics.reset()
    yield


@pytest.fixture
def settings():
    """Settings for tests: in-memory storage, known cron secret."""
    return Settings(
        _env_file=None,
        storage_backend="memory",
        cron_secret="test-cron-secret",
        default_max_attempts=3,
        retry_base_delay_seconds=60,
        retry_max_delay_seconds=3600,
        default_phone_region="US",
    )


@pytest.fixture
async def storage():
    """Fresh in-memory storage with production indexes."""
    storage = StorageContext.in_memory()
    await create_indexes(storage.database)
    return storage


@pytest.fixture
def queue_repo(storage):
    return QueueRepository(storage.database)


@pytest.fixture
def services():
    """Collaborators replaced by AsyncMocks."""
    tokens = AsyncMock()
    tokens.get_access_token = AsyncMock(return_value="access-token")
    tokens.provision_location = AsyncMock(return_value=True)

    notifier = AsyncMock()
    notifier.send_welcome = AsyncMock(return_value=True)

    location_setup = AsyncMock()
    location_setup.run_setup = AsyncMock(return_value={"pipelines": 2, "calendars": 1})

    return Services(notifier=notifier, tokens=tokens, location_setup=location_setup)


@pytest.fixture
def deps(storage, queue_repo, services, settings):
    return ProcessorDeps(storage=storage, queue_repo=queue_repo, services=services, settings=settings)


@pytest.fixture
def make_item():
    """Factory for queue items as ingestion would store them."""
    def _make(
        event_type: str,
        payload: dict,
        *,
        event_id: str = "evt-1",
        tenant_id: str = "loc-1",
        received_at: dt.datetime = T0,
        attempts: int = 0,
        max_attempts: int = 3,
    ) -> QueueItem:
        route = route_for(event_type)
        return QueueItem(
            event_id=event_id,
            tenant_id=tenant_id,
            queue_type=route.queue_type,
            event_type=event_type,
            payload=payload,
            priority=route.priority,
            attempts=attempts,
            max_attempts=max_attempts,
            received_at=received_at,
            next_retry_at=received_at,
            recognized=route.recognized,
            created_at=received_at,
            updated_at=received_at,
        )
    return _make
