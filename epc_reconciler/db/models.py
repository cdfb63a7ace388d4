from datetime import date
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ConfidenceTier(str, Enum):
    """How far a derived fact can be trusted.

    Ordered NONE < MEDIUM < {HIGH, USER_PROVIDED, GOV_CONFIRMED}. The top three
    rank equally for gating but stay distinct for provenance.
    """

    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"
    USER_PROVIDED = "user-provided"
    GOV_CONFIRMED = "gov-confirmed"

    @property
    def rank(self) -> int:
        if self is ConfidenceTier.NONE:
            return 0
        if self is ConfidenceTier.MEDIUM:
            return 1
        return 2

    @property
    def is_resolved(self) -> bool:
        """No further automated stage runs once a fact reaches this tier."""
        return self.rank >= 2


class AddressSource(str, Enum):
    SCRAPE = "scrape"
    HOUSE_PRICES_PAGE_MATCH = "house-prices-page-match"
    GOV_REGISTER_MATCH = "gov-register-match"
    PDF_OCR = "pdf-ocr"
    USER = "user"


class EpcSource(str, Enum):
    NONE = "none"
    LISTING = "listing"
    IMAGE_OCR = "image-ocr"
    PDF_OCR = "pdf-ocr"
    GOV_REGISTER = "gov-register"
    GOV_REGISTER_CHECKED = "gov-register-checked"
    GOV_REGISTER_FILE_MATCH = "gov-register+file-match"
    USER = "user"


class MatchStrength(str, Enum):
    STRONG = "strong"
    MEDIUM = "medium"
    WEAK = "weak"


class RegisterCertificate(BaseModel):
    """One row of the EPC register search results."""

    retrieved_address: str
    retrieved_rating: Optional[str] = None
    certificate_url: str
    valid_until: Optional[date] = None
    is_expired: Optional[bool] = None


class RegisterSuggestion(RegisterCertificate):
    """Register row judged a plausible match for the listing."""

    address_match_score: float = Field(ge=0.0, le=1.0)
    is_rating_match: bool = False
    match_strength: MatchStrength = MatchStrength.WEAK


class AddressRecord(BaseModel):
    postcode: Optional[str] = None
    display_address: Optional[str] = None
    confidence: ConfidenceTier = ConfidenceTier.NONE
    source: AddressSource = AddressSource.SCRAPE
    register_suggestions: Optional[list[RegisterSuggestion]] = None


class EpcRecord(BaseModel):
    url: Optional[str] = None
    rating: Optional[str] = None
    confidence: ConfidenceTier = ConfidenceTier.NONE
    source: EpcSource = EpcSource.NONE
    valid_until: Optional[date] = None
    error: Optional[str] = None
    # Raw band analysis or text-extraction payload, kept for audit
    automated_result: Optional[dict[str, Any]] = None


class PropertyRecord(BaseModel):
    """Reconciled facts for one listing, persisted under ``propertyData-<id>``."""

    property_id: str
    address: AddressRecord = Field(default_factory=AddressRecord)
    epc: EpcRecord = Field(default_factory=EpcRecord)


class AddressLookupPayload(BaseModel):
    """Sale-history criteria used to find the address on a sold-prices page."""

    target_sale_year: Optional[str] = None
    target_sale_price: Optional[str] = None
    target_bedrooms: Optional[int] = None
    nearby_sold_properties_path: Optional[str] = None


class ListingData(BaseModel):
    """Freshly scraped listing fields handed to a reconciliation run."""

    postcode: Optional[str] = None
    display_address: Optional[str] = None
    address_confidence: ConfidenceTier = ConfidenceTier.NONE
    epc_url: Optional[str] = None
    epc_rating: Optional[str] = None
    epc_confidence: ConfidenceTier = ConfidenceTier.NONE
    sale_history: Optional[AddressLookupPayload] = None


class OcrStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not-found"
    ERROR = "error"


class OcrRequest(BaseModel):
    """Outbound RequestImageOCR / RequestPdfOCR message."""

    file_url: str
    request_id: str


class OcrResult(BaseModel):
    """Inbound reply from the page-extraction agent."""

    request_id: str
    status: OcrStatus
    value: Optional[str] = None
    confidence: Optional[ConfidenceTier] = None
    error: Optional[str] = None
    raw_result: Optional[dict[str, Any]] = None
