"""State definitions for the reconciliation graph."""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel

from epc_reconciler.api.house_prices import HousePricesClient
from epc_reconciler.api.image_fetcher import ImageFetcher
from epc_reconciler.broker.request_broker import RequestBroker
from epc_reconciler.db.models import ListingData, PropertyRecord
from epc_reconciler.register.service import RegisterService


class ReconciliationState(BaseModel):
    """State for one property's reconciliation run."""

    # Input
    property_id: str
    listing: ListingData
    cached: Optional[PropertyRecord] = None

    # Working record, mutated stage by stage
    record: Optional[PropertyRecord] = None

    # EPC URL as scraped, and the URL handed to image OCR (possibly embedded)
    original_epc_url: Optional[str] = None
    working_epc_url: Optional[str] = None

    image_ocr_succeeded: bool = False

    # Stage failures, kept for logging and the CLI output
    stage_errors: list[str] = []


@dataclass
class ReconcilerContext:
    """Collaborators shared by every run, passed to nodes through the run config."""

    broker: RequestBroker
    register: RegisterService
    house_prices: HousePricesClient
    image_fetcher: ImageFetcher
