"""Register lookups: fetch a postcode's results page and parse it in the sandbox."""

import logging
from typing import Optional

import httpx

from epc_reconciler.api.register_client import RegisterClient, normalize_postcode
from epc_reconciler.broker.request_broker import RequestBrokerError
from epc_reconciler.db.models import RegisterCertificate
from epc_reconciler.register.sandbox import ParserSandbox, SandboxError

logger = logging.getLogger(__name__)


class RegisterService:
    """Fetches register certificates per postcode, caching results for its lifetime.

    Empty results are cached like any other; failed lookups are not, so a
    later run can try again.
    """

    def __init__(self, client: RegisterClient, sandbox: ParserSandbox):
        self.client = client
        self.sandbox = sandbox
        self._cache: dict[str, list[RegisterCertificate]] = {}

    def cached(self, postcode: str) -> Optional[list[RegisterCertificate]]:
        return self._cache.get(normalize_postcode(postcode))

    async def fetch_certificates(self, postcode: Optional[str]) -> Optional[list[RegisterCertificate]]:
        """Return certificates registered at ``postcode``, or None when the lookup failed."""
        key = normalize_postcode(postcode)
        if not key:
            return None
        if key in self._cache:
            logger.debug("Register cache hit for %s", key)
            return list(self._cache[key])

        try:
            html = await self.client.fetch_search_page(key)
        except httpx.HTTPError as e:
            logger.warning("Register fetch failed for %s: %s", key, e)
            return None
        if html is None:
            return None

        try:
            certificates = await self.sandbox.parse(html)
        except (SandboxError, RequestBrokerError) as e:
            logger.warning("Register parse failed for %s: %s", key, e)
            return None

        logger.info("Register returned %d certificates for %s", len(certificates), key)
        self._cache[key] = certificates
        return list(certificates)

    async def close(self) -> None:
        await self.client.aclose()
        await self.sandbox.close()
