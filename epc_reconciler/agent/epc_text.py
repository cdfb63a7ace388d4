"""Pattern extraction from the text layer of an EPC certificate PDF."""

import logging
import re
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(
    r"Energy performance certificate \(EPC\)[\s\n]*([\s\S]*?\n([A-Z]{1,2}[0-9R][0-9A-Z]?\s*[0-9][A-Z]{2}))",
    re.IGNORECASE,
)
HEADING_PATTERN = re.compile(r"^Energy performance certificate \(EPC\)\s*", re.IGNORECASE)
ADDRESS_TERMINATOR_PATTERN = re.compile(r"Valid until:|Certificate number:", re.IGNORECASE)
RATING_PATTERN = re.compile(
    r"energy rating is\s*([A-G])\s*\.\s*It has the\s*potential to be\s*([A-G])", re.IGNORECASE
)
# Score/band table, e.g. "72 C 85 B"
TABLE_RATING_PATTERN = re.compile(r"(\d+)\s+([A-G])\s+(\d+)\s+([A-G])", re.IGNORECASE)


class ExtractedEpcData(BaseModel):
    full_address: Optional[str] = None
    current_rating: Optional[str] = None
    potential_rating: Optional[str] = None


def is_pdf_url(url: Optional[str]) -> bool:
    """True when the URL path ends in .pdf (query string ignored)."""
    if not url:
        return False
    return url.split("?", 1)[0].split("#", 1)[0].lower().endswith(".pdf")


def extract_address(text: str) -> Optional[str]:
    """Text after the certificate heading, up to the first postcode line, as one comma-separated line."""
    match = ADDRESS_PATTERN.search(text)
    if not match:
        return None
    address = HEADING_PATTERN.sub("", match.group(1).strip()).strip()
    address = ADDRESS_TERMINATOR_PATTERN.split(address, maxsplit=1)[0]
    lines = [line.strip() for line in address.splitlines() if line.strip()]
    return ", ".join(lines) or None


def extract_ratings(text: str) -> tuple[Optional[str], Optional[str]]:
    match = RATING_PATTERN.search(text.replace("\n", " "))
    if match:
        return match.group(1).upper(), match.group(2).upper()

    match = TABLE_RATING_PATTERN.search(text)
    if match:
        logger.info("Ratings taken from the score table")
        return match.group(2).upper(), match.group(4).upper()
    return None, None


def extract_epc_from_text(text: Optional[str]) -> ExtractedEpcData:
    """Pull the address and the current/potential ratings out of certificate text."""
    if not text:
        return ExtractedEpcData()

    address = extract_address(text)
    if address is None:
        logger.warning("Could not extract address from EPC text")
    current, potential = extract_ratings(text)
    if current is None:
        logger.warning("Could not extract ratings from EPC text")
    return ExtractedEpcData(full_address=address, current_rating=current, potential_rating=potential)
