"""
Tests for the HTTP collaborators: token service, welcome notifier, location setup.
"""
import datetime as dt
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from crm_sync.errors import ReauthorizationRequired, TransientError, ValidationError
from crm_sync.services import (
    HttpLocationSetup,
    HttpTokenProvider,
    HttpWelcomeNotifier,
    LogOnlyNotifier,
    WelcomeNotification,
)


def mock_client(response=None, error=None):
    """Patchable httpx.AsyncClient whose get/post return `response` or raise `error`."""
    client = MagicMock()
    method = AsyncMock(side_effect=error) if error else AsyncMock(return_value=response)
    client.get = method
    client.post = method
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=client)


def response(status_code, json=None):
    request = httpx.Request("GET", "https://tokens.example.com")
    return httpx.Response(status_code, json=json or {}, request=request)


@pytest.fixture
def notification():
    return WelcomeNotification(
        user_id="u-1",
        email="ada@example.com",
        name="Ada",
        location_id="loc-1",
        location_name="Acme",
        setup_url="https://app.example.com/setup-account?token=abc",
        expires_at=dt.datetime(2026, 1, 22, tzinfo=dt.UTC),
    )


class TestHttpTokenProvider:
    """Tests for credential lookup."""

    @pytest.fixture
    def provider(self):
        return HttpTokenProvider(base_url="https://tokens.example.com", api_key="k")

    async def test_returns_token(self, provider):
        with patch("crm_sync.services.token_service.httpx.AsyncClient",
                   mock_client(response(200, {"access_token": "tok"}))):
            assert await provider.get_access_token("loc-1") == "tok"

    @pytest.mark.parametrize("status_code", [401, 403, 404])
    async def test_rejected_tenant_needs_reauth(self, provider, status_code):
        with patch("crm_sync.services.token_service.httpx.AsyncClient", mock_client(response(status_code))):
            with pytest.raises(ReauthorizationRequired):
                await provider.get_access_token("loc-1")

    async def test_server_error_is_transient(self, provider):
        with patch("crm_sync.services.token_service.httpx.AsyncClient", mock_client(response(503))):
            with pytest.raises(TransientError):
                await provider.get_access_token("loc-1")

    async def test_network_error_is_transient(self, provider):
        with patch("crm_sync.services.token_service.httpx.AsyncClient",
                   mock_client(error=httpx.ConnectError("refused"))):
            with pytest.raises(TransientError):
                await provider.get_access_token("loc-1")

    async def test_unconfigured_provider_needs_reauth(self):
        provider = HttpTokenProvider()
        provider._base_url = ""

        with pytest.raises(ReauthorizationRequired):
            await provider.get_access_token("loc-1")

    async def test_provision_failure_returns_false(self, provider):
        with patch("crm_sync.services.token_service.httpx.AsyncClient",
                   mock_client(error=httpx.ConnectError("refused"))):
            assert await provider.provision_location("co-1", "loc-1") is False


class TestWelcomeNotifier:

    async def test_posts_welcome(self, notification):
        factory = mock_client(response(202))
        with patch("crm_sync.services.notification_service.httpx.AsyncClient", factory):
            sent = await HttpWelcomeNotifier(api_url="https://notify.example.com/send").send_welcome(notification)

        payload = factory.return_value.post.await_args.kwargs["json"]
        assert sent is True
        assert payload["to"] == "ada@example.com"
        assert payload["data"]["setupUrl"].endswith("token=abc")

    async def test_http_error_returns_false(self, notification):
        with patch("crm_sync.services.notification_service.httpx.AsyncClient", mock_client(response(500))):
            sent = await HttpWelcomeNotifier(api_url="https://notify.example.com/send").send_welcome(notification)

        assert sent is False

    async def test_log_only_notifier(self, notification):
        assert await LogOnlyNotifier().send_welcome(notification) is True


class TestHttpLocationSetup:

    @pytest.fixture
    def location_setup(self):
        return HttpLocationSetup(url="https://setup.example.com/run")

    async def test_returns_results(self, location_setup):
        with patch("crm_sync.services.setup_service.httpx.AsyncClient", mock_client(response(200, {"pipelines": 2}))):
            assert await location_setup.run_setup("loc-1", "tok") == {"pipelines": 2}

    async def test_server_error_is_transient(self, location_setup):
        with patch("crm_sync.services.setup_service.httpx.AsyncClient", mock_client(response(502))):
            with pytest.raises(TransientError):
                await location_setup.run_setup("loc-1", "tok")

    async def test_client_error_is_not_retried(self, location_setup):
        with patch("crm_sync.services.setup_service.httpx.AsyncClient", mock_client(response(422))):
            with pytest.raises(ValidationError):
                await location_setup.run_setup("loc-1", "tok")
