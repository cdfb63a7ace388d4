import logging
import re
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from epc_reconciler.utils.config import settings
from epc_reconciler.utils.http import retry_after_seconds

logger = logging.getLogger(__name__)

SEARCH_PATH = "/find-a-certificate/search-by-postcode"

# Retry on network errors and rate limits (429)
RETRYABLE_EXCEPTIONS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.ConnectTimeout,
)


def normalize_postcode(postcode: Optional[str]) -> str:
    """Uppercase and drop all whitespace: ' sw1a 2aa ' -> 'SW1A2AA'."""
    if not postcode:
        return ""
    return re.sub(r"\s+", "", postcode).upper()


class RegisterClient:
    """Client for the EPC register's search-by-postcode pages."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.register_base_url).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "text/html"},
            timeout=timeout or settings.http_timeout_seconds,
            follow_redirects=True,
        )

    @retry(
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "Retrying EPC register call (attempt %d)", retry_state.attempt_number
        ),
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make a request with retry logic."""
        response = await self.client.request(method, path, **kwargs)

        # Handle rate limiting with retry
        if response.status_code == 429:
            retry_after = retry_after_seconds(response.headers.get("Retry-After"))
            logger.warning("Rate limited, will retry after %d seconds", retry_after)
            raise httpx.ReadTimeout(f"Rate limited, retry after {retry_after}s")

        return response

    async def fetch_search_page(self, postcode: str) -> Optional[str]:
        """Fetch the results page HTML for a postcode.

        Returns None for a blank postcode or a non-2xx response.
        """
        normalized = normalize_postcode(postcode)
        if not normalized:
            logger.warning("No postcode supplied for register search")
            return None

        response = await self._request("GET", SEARCH_PATH, params={"postcode": normalized})
        if not 200 <= response.status_code < 300:
            logger.warning(
                "Register search for %s failed with status %d", normalized, response.status_code
            )
            return None
        return response.text

    async def aclose(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()
