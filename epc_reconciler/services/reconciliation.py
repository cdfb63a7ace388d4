"""Property reconciliation service - runs the workflow for one listing at a time per property."""

import argparse
import asyncio
import json
import logging
import sys
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from epc_reconciler.agent.extraction_agent import LocalExtractionAgent
from epc_reconciler.api.house_prices import HousePricesClient
from epc_reconciler.api.image_fetcher import ImageFetcher
from epc_reconciler.api.notifier import LoggingNotifier, Notifier, create_notifier
from epc_reconciler.api.register_client import RegisterClient
from epc_reconciler.broker.request_broker import RequestBroker
from epc_reconciler.db.connection import close_pool, wait_for_database
from epc_reconciler.db.models import ListingData, PropertyRecord
from epc_reconciler.db.property_cache import (
    InMemoryPropertyCache,
    PropertyCache,
    create_property_cache,
)
from epc_reconciler.graph.state import ReconcilerContext, ReconciliationState
from epc_reconciler.graph.workflow import reconciliation_graph
from epc_reconciler.register.sandbox import ParserSandbox
from epc_reconciler.register.service import RegisterService
from epc_reconciler.utils.config import settings

logger = logging.getLogger(__name__)


class ReconcileStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    INVALID = "invalid"
    FAILED = "failed"


class ReconcileResult(BaseModel):
    status: ReconcileStatus
    record: Optional[PropertyRecord] = None
    error: Optional[str] = None
    stage_errors: list[str] = []


class Reconciler:
    """Runs reconciliation for listings, at most one run per property at a time."""

    def __init__(
        self,
        context: ReconcilerContext,
        cache: Optional[PropertyCache] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.context = context
        self.cache = cache or InMemoryPropertyCache()
        self.notifier = notifier or LoggingNotifier()
        self._in_progress: set[str] = set()

    def is_in_progress(self, property_id: str) -> bool:
        return property_id in self._in_progress

    async def reconcile(self, property_id: Optional[str], listing: ListingData) -> ReconcileResult:
        """Reconcile one listing and persist the result.

        Returns ``skipped`` when a run for the same property is already in
        progress and ``invalid`` without a property id; never raises.
        """
        if not property_id:
            logger.error("Cannot reconcile without a property id")
            return ReconcileResult(status=ReconcileStatus.INVALID, error="Missing property id")

        if property_id in self._in_progress:
            logger.info("Reconciliation already running for %s; skipping", property_id)
            return ReconcileResult(status=ReconcileStatus.SKIPPED)

        self._in_progress.add(property_id)
        try:
            return await self._run(property_id, listing)
        except Exception as e:
            logger.exception("Reconciliation failed for %s", property_id)
            return ReconcileResult(status=ReconcileStatus.FAILED, error=str(e))
        finally:
            self._in_progress.discard(property_id)

    async def _run(self, property_id: str, listing: ListingData) -> ReconcileResult:
        try:
            cached = await self.cache.get(property_id)
        except Exception:
            logger.exception("Could not read cached record for %s", property_id)
            cached = None

        initial_state = ReconciliationState(property_id=property_id, listing=listing, cached=cached)
        final_state = await reconciliation_graph.ainvoke(
            initial_state, config={"configurable": {"context": self.context}}
        )
        record = PropertyRecord.model_validate(final_state["record"])
        stage_errors = list(final_state.get("stage_errors") or [])

        await self.cache.set(record)
        try:
            await self.notifier.notify(record)
        except Exception:
            logger.exception("Notification failed for %s", property_id)

        logger.info(
            "Reconciled %s: address %s (%s), EPC %s (%s)",
            property_id,
            record.address.display_address,
            record.address.confidence.value,
            record.epc.rating,
            record.epc.confidence.value,
        )
        return ReconcileResult(
            status=ReconcileStatus.COMPLETED, record=record, stage_errors=stage_errors
        )


class ReconcilerRuntime:
    """Builds the configured collaborators and tears them down again."""

    def __init__(self):
        self.broker = RequestBroker()
        self.register_client = RegisterClient()
        self.sandbox = ParserSandbox(
            self.broker, settings.register_parse_timeout_seconds, base_url=settings.register_base_url
        )
        self.agent = LocalExtractionAgent(self.broker, settings.ocr_timeout_seconds)
        self.house_prices = HousePricesClient()
        self.image_fetcher = ImageFetcher()
        self.notifier = create_notifier()
        self.reconciler = Reconciler(
            ReconcilerContext(
                broker=self.broker,
                register=RegisterService(self.register_client, self.sandbox),
                house_prices=self.house_prices,
                image_fetcher=self.image_fetcher,
            ),
            cache=create_property_cache(settings.database_url),
            notifier=self.notifier,
        )

    async def aclose(self) -> None:
        await self.reconciler.context.register.close()
        await self.agent.aclose()
        await self.house_prices.aclose()
        await self.image_fetcher.aclose()
        if hasattr(self.notifier, "aclose"):
            await self.notifier.aclose()
        if settings.database_url:
            await close_pool()


def load_listing(path: str) -> tuple[Optional[str], ListingData]:
    """Read a listing JSON document: listing fields plus ``property_id``."""
    with open(path, encoding="utf-8") as f:
        document = json.load(f)
    if not isinstance(document, dict):
        raise ValueError("Listing document must be a JSON object")
    property_id = document.pop("property_id", None)
    return property_id, ListingData.model_validate(document)


async def _run_once(property_id: Optional[str], listing: ListingData) -> ReconcileResult:
    if settings.database_url:
        logger.info("Checking database connectivity...")
        if not await wait_for_database():
            logger.error("Cannot reconcile: database not available")
            await close_pool()
            return ReconcileResult(status=ReconcileStatus.FAILED, error="Database not available")

    runtime = ReconcilerRuntime()
    try:
        return await runtime.reconciler.reconcile(property_id, listing)
    finally:
        await runtime.aclose()


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for reconciling a single listing from the command line."""
    parser = argparse.ArgumentParser(description="Reconcile a property listing's address and EPC rating.")
    parser.add_argument("listing", help="Path to a listing JSON document")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        property_id, listing = load_listing(args.listing)
    except (OSError, ValueError) as e:
        logger.error("Could not read listing %s: %s", args.listing, e)
        return 2

    result = asyncio.run(_run_once(property_id, listing))
    print(result.model_dump_json(indent=2))
    return 0 if result.status is ReconcileStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
