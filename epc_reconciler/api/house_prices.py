import json
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

from epc_reconciler.db.models import AddressLookupPayload
from epc_reconciler.utils.config import settings
from epc_reconciler.utils.http import retry_after_seconds

logger = logging.getLogger(__name__)

PAGE_MODEL_PATTERN = re.compile(r"window\.PAGE_MODEL\s*=\s*({[\s\S]*?});?\s*</script>")
YEAR_PATTERN = re.compile(r"\b(\d{4})\b")

RETRYABLE_EXCEPTIONS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.ConnectTimeout,
)


def _parse_price(value) -> Optional[int]:
    """'£325,000' -> 325000."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return int(digits) if digits else None


def _parse_year(value) -> Optional[str]:
    if not value:
        return None
    match = YEAR_PATTERN.search(str(value))
    return match.group(1) if match else None


def _transaction_matches(
    transaction: dict, target_year: Optional[str], target_price: Optional[int]
) -> bool:
    if target_year and _parse_year(transaction.get("dateSold")) != target_year:
        return False
    if target_price is not None and _parse_price(transaction.get("displayPrice")) != target_price:
        return False
    return True


def find_matching_address(page_model: dict, payload: AddressLookupPayload) -> Optional[str]:
    """Find the address of the sold property matching the sale-history criteria.

    Every supplied criterion must match one of the property's transactions;
    bedrooms are compared only when a target count is given.
    """
    target_year = _parse_year(payload.target_sale_year)
    target_price = _parse_price(payload.target_sale_price)
    properties = (page_model.get("searchResult") or {}).get("properties") or []

    for prop in properties:
        if payload.target_bedrooms is not None and prop.get("bedrooms") != payload.target_bedrooms:
            continue
        transactions = prop.get("transactions") or []
        if not transactions and prop.get("latestTransaction"):
            transactions = [prop["latestTransaction"]]
        if any(_transaction_matches(t, target_year, target_price) for t in transactions):
            return prop.get("address")
    return None


class HousePricesClient:
    """Looks up a listing's address on a sold-prices page using its sale history."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.house_prices_base_url,
            timeout=timeout or settings.http_timeout_seconds,
            follow_redirects=True,
        )

    @retry(
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "Retrying sold-prices call (attempt %d)", retry_state.attempt_number
        ),
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, path, **kwargs)
        if response.status_code == 429:
            retry_after = retry_after_seconds(response.headers.get("Retry-After"))
            logger.warning("Rate limited, will retry after %d seconds", retry_after)
            raise httpx.ReadTimeout(f"Rate limited, retry after {retry_after}s")
        return response

    async def lookup_address(self, payload: AddressLookupPayload) -> Optional[str]:
        """Return the matching property's address, or None."""
        if not payload.nearby_sold_properties_path:
            logger.warning("No sold-properties path supplied; skipping address lookup")
            return None
        if not payload.target_sale_year and not payload.target_sale_price:
            logger.warning("No sale year or price supplied; skipping address lookup")
            return None

        try:
            response = await self._request("GET", payload.nearby_sold_properties_path)
        except httpx.HTTPError as e:
            logger.warning("Sold-prices fetch failed: %s", e)
            return None
        if not 200 <= response.status_code < 300:
            logger.warning("Sold-prices page returned status %d", response.status_code)
            return None

        match = PAGE_MODEL_PATTERN.search(response.text)
        if not match:
            logger.warning("Sold-prices page has no embedded page model")
            return None
        try:
            page_model = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            logger.warning("Could not decode sold-prices page model: %s", e)
            return None

        address = find_matching_address(page_model, payload)
        if address:
            logger.info("Matched sale history to '%s'", address)
        else:
            logger.info("No sold property matched the sale history")
        return address

    async def aclose(self):
        await self.client.aclose()
