"""Node functions for the reconciliation graph.

Each node reads its collaborators from ``config["configurable"]["context"]``,
mutates ``state.record`` and returns the state. Nodes catch their own
failures: a failed stage downgrades what it touches and the run continues.
"""

import logging
from typing import Optional

from langchain_core.runnables import RunnableConfig

from epc_reconciler.agent.epc_text import is_pdf_url
from epc_reconciler.api.image_fetcher import is_fetchable_url
from epc_reconciler.broker.request_broker import (
    KIND_IMAGE_OCR,
    KIND_PDF_OCR,
    RequestTimeoutError,
)
from epc_reconciler.db.models import (
    AddressRecord,
    AddressSource,
    ConfidenceTier,
    EpcRecord,
    EpcSource,
    ListingData,
    OcrResult,
    OcrStatus,
    PropertyRecord,
    RegisterSuggestion,
)
from epc_reconciler.graph.state import ReconcilerContext, ReconciliationState
from epc_reconciler.utils.address_matching import (
    MEDIUM_ADDRESS_SIMILARITY,
    is_qualifying_match,
    plausible_matches,
    ratings_match,
    unique_strong_match,
)

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp")
REGISTER_SOURCES = (EpcSource.GOV_REGISTER, EpcSource.GOV_REGISTER_FILE_MATCH)
OCR_SOURCES = (EpcSource.IMAGE_OCR, EpcSource.PDF_OCR)


def _context(config: RunnableConfig) -> ReconcilerContext:
    return config["configurable"]["context"]


def _record_error(state: ReconciliationState, stage: str, error: Exception) -> None:
    state.stage_errors = state.stage_errors + [f"{stage}: {error}"]


def is_image_url(url: Optional[str]) -> bool:
    """Embedded image data, or a URL whose path has an image extension."""
    if not url:
        return False
    if url.startswith("data:image/"):
        return True
    path = url.split("?", 1)[0].split("#", 1)[0].lower()
    return path.endswith(IMAGE_EXTENSIONS)


def at_least_medium(tier: Optional[ConfidenceTier]) -> ConfidenceTier:
    if tier is None or tier.rank < ConfidenceTier.MEDIUM.rank:
        return ConfidenceTier.MEDIUM
    return tier


def is_register_confirmed(epc: EpcRecord) -> bool:
    return epc.source in REGISTER_SOURCES and epc.confidence is ConfidenceTier.GOV_CONFIRMED


# --- Merge ---


def _merge_address(cached: Optional[AddressRecord], listing: ListingData) -> AddressRecord:
    fresh = AddressRecord(
        postcode=listing.postcode,
        display_address=listing.display_address,
        confidence=listing.address_confidence,
        source=AddressSource.SCRAPE,
    )
    if cached is None:
        return fresh

    if cached.confidence in (ConfidenceTier.GOV_CONFIRMED, ConfidenceTier.USER_PROVIDED):
        merged = cached.model_copy(deep=True)
        merged.postcode = merged.postcode or fresh.postcode
        return merged

    if not fresh.display_address or fresh.display_address == cached.display_address:
        merged = cached.model_copy(deep=True)
        merged.postcode = fresh.postcode or cached.postcode
        if fresh.display_address and fresh.confidence.rank > cached.confidence.rank:
            merged.confidence = fresh.confidence
            merged.source = fresh.source
        return merged

    # A different scraped address invalidates cached suggestions
    fresh.postcode = fresh.postcode or cached.postcode
    return fresh


def _merge_epc(cached: Optional[EpcRecord], listing: ListingData) -> EpcRecord:
    fresh = EpcRecord(
        url=listing.epc_url,
        rating=listing.epc_rating.strip().upper() if listing.epc_rating else None,
        confidence=listing.epc_confidence,
        source=EpcSource.LISTING if listing.epc_rating else EpcSource.NONE,
    )
    if cached is None:
        return fresh

    from_good_pdf = cached.source is EpcSource.PDF_OCR and cached.confidence in (
        ConfidenceTier.MEDIUM,
        ConfidenceTier.HIGH,
    )
    if from_good_pdf or is_register_confirmed(cached) or cached.confidence is ConfidenceTier.USER_PROVIDED:
        return cached.model_copy(deep=True)

    if not fresh.url and not fresh.rating:
        return cached.model_copy(deep=True)

    same_url = not fresh.url or fresh.url == cached.url
    if same_url and cached.confidence.rank > fresh.confidence.rank:
        merged = cached.model_copy(deep=True)
        merged.url = fresh.url or cached.url
        return merged

    fresh.url = fresh.url or cached.url
    fresh.rating = fresh.rating or cached.rating
    return fresh


def merge_property_record(
    property_id: str, cached: Optional[PropertyRecord], listing: ListingData
) -> PropertyRecord:
    """Combine the cached record with freshly scraped listing data.

    Non-empty scraped fields win, cached fields fill gaps, and facts already
    confirmed by the register, a PDF or the user are never overwritten.
    """
    return PropertyRecord(
        property_id=property_id,
        address=_merge_address(cached.address if cached else None, listing),
        epc=_merge_epc(cached.epc if cached else None, listing),
    )


async def merge_listing_data(state: ReconciliationState) -> ReconciliationState:
    """Merge fresh listing data over the cached record."""
    state.record = merge_property_record(state.property_id, state.cached, state.listing)
    state.original_epc_url = state.record.epc.url
    state.working_epc_url = state.record.epc.url
    logger.info(
        "Merged %s: address %s, EPC %s",
        state.property_id,
        state.record.address.confidence.value,
        state.record.epc.confidence.value,
    )
    return state


# --- Address lookup ---


def should_lookup_address(state: ReconciliationState) -> str:
    """Run the sale-history lookup only for unresolved addresses with lookup inputs."""
    history = state.listing.sale_history
    if state.record.address.confidence.is_resolved:
        return "skip"
    if history is None or not history.nearby_sold_properties_path:
        return "skip"
    if not history.target_sale_year and not history.target_sale_price:
        return "skip"
    return "lookup"


async def lookup_address(state: ReconciliationState, config: RunnableConfig) -> ReconciliationState:
    """Find the address on a sold-prices page from the listing's sale history."""
    try:
        address = await _context(config).house_prices.lookup_address(state.listing.sale_history)
    except Exception as e:
        logger.exception("Address lookup failed for %s", state.property_id)
        _record_error(state, "address-lookup", e)
        return state

    if address:
        record = state.record
        if address != record.address.display_address:
            record.address.register_suggestions = None
        record.address.display_address = address
        record.address.confidence = ConfidenceTier.HIGH
        record.address.source = AddressSource.HOUSE_PRICES_PAGE_MATCH
    return state


# --- Register ---


def _adopt_certificate(record: PropertyRecord, cert, adopt_address: bool) -> None:
    if adopt_address and record.address.confidence is not ConfidenceTier.USER_PROVIDED:
        record.address.display_address = cert.retrieved_address
        record.address.confidence = ConfidenceTier.GOV_CONFIRMED
        record.address.source = AddressSource.GOV_REGISTER_MATCH
    record.epc.rating = cert.retrieved_rating
    record.epc.url = cert.certificate_url
    record.epc.valid_until = cert.valid_until
    record.epc.confidence = ConfidenceTier.GOV_CONFIRMED
    record.epc.source = EpcSource.GOV_REGISTER
    record.epc.error = None
    record.epc.automated_result = {
        "retrieved_address": cert.retrieved_address,
        "retrieved_rating": cert.retrieved_rating,
        "is_expired": cert.is_expired,
    }
    record.address.register_suggestions = None


async def check_register(state: ReconciliationState, config: RunnableConfig) -> ReconciliationState:
    """Match the listing against register certificates for its postcode."""
    record = state.record
    if is_register_confirmed(record.epc) or record.epc.confidence is ConfidenceTier.USER_PROVIDED:
        return state

    try:
        certificates = await _context(config).register.fetch_certificates(record.address.postcode)
    except Exception as e:
        logger.exception("Register check failed for %s", state.property_id)
        _record_error(state, "register", e)
        return state

    if not certificates:
        return state

    display_address = record.address.display_address
    if record.address.confidence.is_resolved:
        match = unique_strong_match(certificates, display_address)
        if match is not None:
            logger.info("Adopting register certificate for %s: %s", state.property_id, match.retrieved_address)
            _adopt_certificate(record, match, adopt_address=False)
            return state

    suggestions = plausible_matches(certificates, display_address, record.epc.rating)
    record.address.register_suggestions = suggestions or None
    qualifying = [s for s in suggestions if is_qualifying_match(s)]
    if len(qualifying) == 1:
        logger.info(
            "Single qualifying register match for %s: %s", state.property_id, qualifying[0].retrieved_address
        )
        _adopt_certificate(record, qualifying[0], adopt_address=True)
        return state

    logger.info("%d register suggestions kept for %s", len(suggestions), state.property_id)
    if record.epc.confidence is ConfidenceTier.NONE:
        record.epc.source = EpcSource.GOV_REGISTER_CHECKED
    return state


def route_after_register(state: ReconciliationState) -> str:
    if state.record.epc.confidence.is_resolved:
        return "resolved"
    return "unresolved"


# --- OCR ---


async def embed_epc_image(state: ReconciliationState, config: RunnableConfig) -> ReconciliationState:
    """Swap a remote certificate image for an embedded copy; keep the URL on failure."""
    url = state.working_epc_url
    if state.record.epc.confidence.is_resolved or not is_fetchable_url(url) or is_pdf_url(url):
        return state

    try:
        embedded = await _context(config).image_fetcher.fetch_and_embed(url)
    except Exception as e:
        logger.exception("Embedding EPC image failed for %s", state.property_id)
        _record_error(state, "embed-image", e)
        return state

    if embedded:
        state.working_epc_url = embedded
    else:
        logger.warning("Could not embed EPC image for %s; using original URL", state.property_id)
    return state


async def _request_ocr(
    state: ReconciliationState, config: RunnableConfig, kind: str, url: str
) -> Optional[OcrResult]:
    """Round-trip an OCR request; failures are written onto the EPC record."""
    epc = state.record.epc
    try:
        result = await _context(config).broker.request(kind, url)
    except RequestTimeoutError as e:
        logger.warning("%s timed out for %s", kind, state.property_id)
        epc.confidence = ConfidenceTier.NONE
        epc.error = str(e)
        return None
    except Exception as e:
        logger.exception("%s failed for %s", kind, state.property_id)
        _record_error(state, kind, e)
        epc.confidence = ConfidenceTier.NONE
        epc.error = f"{kind} failed: {e}"
        return None

    if result.status is not OcrStatus.FOUND or not result.value:
        epc.confidence = ConfidenceTier.NONE
        epc.error = result.error or f"{kind} returned status {result.status.value}"
        if result.raw_result is not None:
            epc.automated_result = result.raw_result
        return None
    return result


async def image_ocr(state: ReconciliationState, config: RunnableConfig) -> ReconciliationState:
    """Read the rating from the certificate image via the extraction agent."""
    url = state.working_epc_url
    if state.record.epc.confidence.is_resolved or not is_image_url(url):
        return state

    result = await _request_ocr(state, config, KIND_IMAGE_OCR, url)
    if result is None:
        return state

    epc = state.record.epc
    epc.rating = result.value.strip().upper()
    epc.confidence = at_least_medium(result.confidence)
    epc.source = EpcSource.IMAGE_OCR
    epc.error = None
    epc.automated_result = result.raw_result
    state.image_ocr_succeeded = True
    logger.info("Image OCR for %s read rating %s", state.property_id, epc.rating)
    return state


async def pdf_ocr(state: ReconciliationState, config: RunnableConfig) -> ReconciliationState:
    """Read the rating, and possibly the address, from the certificate PDF."""
    if state.record.epc.confidence.is_resolved or state.image_ocr_succeeded:
        return state
    if not is_pdf_url(state.original_epc_url):
        return state

    result = await _request_ocr(state, config, KIND_PDF_OCR, state.original_epc_url)
    if result is None:
        return state

    record = state.record
    record.epc.rating = result.value.strip().upper()
    record.epc.confidence = at_least_medium(result.confidence)
    record.epc.source = EpcSource.PDF_OCR
    record.epc.url = state.original_epc_url
    record.epc.error = None
    record.epc.automated_result = result.raw_result

    pdf_address = (result.raw_result or {}).get("full_address")
    if pdf_address and record.address.confidence.rank < ConfidenceTier.HIGH.rank:
        record.address.display_address = pdf_address
        record.address.confidence = ConfidenceTier.MEDIUM
        record.address.source = AddressSource.PDF_OCR
    logger.info("PDF OCR for %s read rating %s", state.property_id, record.epc.rating)
    return state


# --- Re-evaluation ---


def matching_suggestions(
    suggestions: list[RegisterSuggestion], rating: str
) -> list[RegisterSuggestion]:
    return [
        s
        for s in suggestions
        if ratings_match(s.retrieved_rating, rating) and s.address_match_score >= MEDIUM_ADDRESS_SIMILARITY
    ]


async def reevaluate_suggestions(state: ReconciliationState) -> ReconciliationState:
    """Confirm an OCR rating against stored register suggestions.

    Exactly one suggestion with the same rating confirms both address and
    EPC; several are ambiguous and change nothing.
    """
    record = state.record
    suggestions = record.address.register_suggestions
    if record.epc.source not in OCR_SOURCES or not record.epc.rating or not suggestions:
        return state

    matches = matching_suggestions(suggestions, record.epc.rating)
    if len(matches) != 1:
        if matches:
            logger.info(
                "%d suggestions share rating %s for %s; not escalating",
                len(matches),
                record.epc.rating,
                state.property_id,
            )
        return state

    match = matches[0]
    logger.info("OCR rating %s confirmed by register for %s", record.epc.rating, state.property_id)
    if record.address.confidence is not ConfidenceTier.USER_PROVIDED:
        record.address.display_address = match.retrieved_address
        record.address.confidence = ConfidenceTier.GOV_CONFIRMED
        record.address.source = AddressSource.GOV_REGISTER_MATCH
    record.address.register_suggestions = [match]
    record.epc.confidence = ConfidenceTier.GOV_CONFIRMED
    record.epc.source = EpcSource.GOV_REGISTER_FILE_MATCH
    record.epc.valid_until = match.valid_until
    return state
