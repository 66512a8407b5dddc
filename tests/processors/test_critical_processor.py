"""
Tests for app lifecycle and user provisioning.
"""
from unittest.mock import AsyncMock

import pytest

from crm_sync.errors import ValidationError
from crm_sync.models.queue import QueueStatus, QueueType
from crm_sync.processors.critical import CriticalProcessor
from crm_sync.utils.metrics import metrics

INSTALL_PAYLOAD = {
    "type": "INSTALL",
    "installType": "Location",
    "locationId": "loc-1",
    "companyId": "co-1",
    "userId": "u-1",
    "companyName": "Acme Builders",
}


@pytest.fixture
def processor(deps):
    return CriticalProcessor(deps)


async def get_location(storage):
    return await storage.database.locations.find_one({"ghl_location_id": "loc-1"})


class TestInstall:
    """Tests for INSTALL / UNINSTALL."""

    async def test_install_marks_location_and_queues_setup(self, processor, make_item, storage, queue_repo, services):
        await processor.process_item(make_item("INSTALL", INSTALL_PAYLOAD))

        location = await get_location(storage)
        setup = await queue_repo.get("loc-1", "setup:evt-1")
        assert location["app_installed"] is True
        assert location["company_id"] == "co-1"
        assert setup.queue_type == QueueType.INSTALL
        assert setup.event_type == "SETUP_LOCATION"
        assert setup.status == QueueStatus.PENDING
        services.tokens.provision_location.assert_awaited_once_with("co-1", "loc-1")

    async def test_install_replay_queues_setup_once(self, processor, make_item, storage, queue_repo):
        item = make_item("INSTALL", INSTALL_PAYLOAD)

        await processor.process_item(item)
        await processor.process_item(item)

        assert await queue_repo.count() == 1
        assert await storage.database.app_events.count_documents({}) == 1

    async def test_uninstall_clears_install_state(self, processor, make_item, storage):
        await processor.process_item(make_item("INSTALL", INSTALL_PAYLOAD, event_id="wh-1"))
        await storage.database.users.insert_one({"ghl_user_id": "u-1", "location_id": "loc-1"})

        await processor.process_item(make_item("UNINSTALL", {"locationId": "loc-1", "companyId": "co-1"}, event_id="wh-2"))

        location = await get_location(storage)
        user = await storage.database.users.find_one({"ghl_user_id": "u-1"})
        assert location["app_installed"] is False
        assert "install_webhook_id" not in location
        assert location["uninstall_webhook_id"] == "wh-2"
        assert user["requires_reauth"] is True

    async def test_install_without_ids_is_rejected(self, processor, make_item):
        with pytest.raises(ValidationError):
            await processor.process_item(make_item("INSTALL", {"type": "INSTALL"}))


class TestUserCreate:
    """Tests for user provisioning and the welcome hook."""

    PAYLOAD = {"user": {"id": "u-1", "email": "ada@example.com", "firstName": "Ada", "lastName": "Lovelace"}}

    async def test_creates_user_and_sends_welcome_once(self, processor, make_item, storage, services):
        item = make_item("UserCreate", self.PAYLOAD)

        await processor.process_item(item)
        await processor.process_item(item)

        user = await storage.database.users.find_one({"ghl_user_id": "u-1"})
        assert user["name"] == "Ada Lovelace"
        assert user["needs_setup"] is True
        assert user["setup_token"]
        services.notifier.send_welcome.assert_awaited_once()
        notification = services.notifier.send_welcome.await_args.args[0]
        assert notification.email == "ada@example.com"
        assert notification.setup_url.endswith(user["setup_token"])

    async def test_hook_failure_does_not_fail_the_item(self, processor, make_item, storage, services):
        """Post-commit hook errors are counted, not raised."""
        services.notifier.send_welcome = AsyncMock(side_effect=RuntimeError("mail API down"))

        await processor.process_item(make_item("UserCreate", self.PAYLOAD))

        assert await storage.database.users.count_documents({}) == 1
        assert metrics.hook_failures.value(queue_type="critical") == 1
