import pytest
from fastapi.testclient import TestClient

from crm_sync.api.main import create_app
from crm_sync.repositories import StorageContext

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def api_storage():
    """Storage shared between the app and assertions made through the portal."""
    return StorageContext.in_memory()


@pytest.fixture
def client(settings, api_storage, services):
    """Test client with the lifespan (index creation, pipeline wiring) run."""
    app = create_app(settings=settings, storage=api_storage, services=services)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def cron_headers():
    return dict(CRON_HEADERS)
