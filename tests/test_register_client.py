"""Tests for the EPC register client."""

import asyncio
from unittest.mock import MagicMock, patch

import httpx
import pytest

from epc_reconciler.api.register_client import SEARCH_PATH, RegisterClient, normalize_postcode


class TestNormalizePostcode:
    def test_uppercases_and_strips_whitespace(self):
        assert normalize_postcode(" sw1a 2aa ") == "SW1A2AA"

    def test_internal_whitespace_removed(self):
        assert normalize_postcode("SW1A\t 2AA") == "SW1A2AA"

    def test_empty(self):
        assert normalize_postcode(None) == ""
        assert normalize_postcode("   ") == ""


class TestRegisterClient:
    """Test EPC register client."""

    @pytest.fixture
    def client(self, mock_env):
        """Create a client instance."""
        return RegisterClient()

    def _response(self, status_code=200, text="<html></html>"):
        response = MagicMock()
        response.status_code = status_code
        response.text = text
        response.headers = {}
        return response

    def test_client_initialization(self, client):
        """Test client initializes with base URL and timeout."""
        assert str(client.client.base_url) == "https://register.example"
        assert client.client.timeout.connect == 30.0

    def test_fetch_search_page_success(self, client):
        """Test successful search returns the page HTML."""
        response = self._response(text="<table></table>")

        with patch.object(client.client, "request", return_value=response) as request:
            html = asyncio.run(client.fetch_search_page("sw1a 2aa"))

        assert html == "<table></table>"
        request.assert_called_once_with("GET", SEARCH_PATH, params={"postcode": "SW1A2AA"})

    def test_non_success_status_returns_none(self, client):
        """Test a non-2xx response is treated as no page."""
        with patch.object(client.client, "request", return_value=self._response(status_code=503)):
            html = asyncio.run(client.fetch_search_page("SW1A 2AA"))

        assert html is None

    def test_blank_postcode_skips_request(self, client):
        with patch.object(client.client, "request") as request:
            html = asyncio.run(client.fetch_search_page("  "))

        assert html is None
        request.assert_not_called()

    def test_context_manager(self, mock_env):
        """Test client works as async context manager."""

        async def use_client():
            async with RegisterClient() as client:
                assert client is not None
            return client

        client = asyncio.run(use_client())
        assert client.client.is_closed

    def test_retry_on_timeout(self, client):
        """Test retry behavior on timeout."""
        call_count = 0

        def mock_request(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise httpx.ReadTimeout("Timeout")
            return self._response(text="ok")

        with patch.object(client.client, "request", side_effect=mock_request):
            html = asyncio.run(client.fetch_search_page("SW1A 2AA"))

        assert call_count == 3  # Retried twice, succeeded on third
        assert html == "ok"

    def test_rate_limit_handling(self, client):
        """Test rate limit (429) triggers retry."""
        call_count = 0

        def mock_request(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                response = self._response(status_code=429)
                response.headers = {"Retry-After": "1"}
                return response
            return self._response(text="ok")

        with patch.object(client.client, "request", side_effect=mock_request):
            html = asyncio.run(client.fetch_search_page("SW1A 2AA"))

        assert call_count == 2
        assert html == "ok"

    def test_rate_limit_with_http_date_retry_after(self, client):
        """Test a 429 carrying an HTTP-date Retry-After is retried, not raised."""
        call_count = 0

        def mock_request(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                response = self._response(status_code=429)
                response.headers = {"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}
                return response
            return self._response(text="ok")

        with patch.object(client.client, "request", side_effect=mock_request):
            html = asyncio.run(client.fetch_search_page("SW1A 2AA"))

        assert call_count == 2
        assert html == "ok"

    def test_retries_exhausted_reraises(self, client):
        """Test the transport error surfaces once retries run out."""
        with patch.object(client.client, "request", side_effect=httpx.ConnectError("down")):
            with pytest.raises(httpx.ConnectError):
                asyncio.run(client.fetch_search_page("SW1A 2AA"))
