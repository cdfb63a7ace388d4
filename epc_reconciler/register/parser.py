"""Parse the EPC register's search-by-postcode results page."""

import logging
import re
from datetime import date
from typing import Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from dateutil import parser as dateutil_parser

from epc_reconciler.db.models import RegisterCertificate

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://find-energy-certificate.service.gov.uk"

EXPIRED_ON_PATTERN = re.compile(r"Expired on\s+(\d{1,2} \w+ \d{4})")
VALID_UNTIL_PATTERN = re.compile(r"Valid until\s+(\d{1,2} \w+ \d{4})")
BARE_DATE_PATTERN = re.compile(r"(\d{1,2} \w+ \d{4})")


def _parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a register date such as '12 May 2031' (day first)."""
    if not value or not value.strip():
        return None
    try:
        return dateutil_parser.parse(value.strip(), dayfirst=True, fuzzy=False).date()
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning("Could not parse register date '%s': %s", value, e)
        return None


def _text(element: Optional[Tag]) -> str:
    if element is None:
        return ""
    return " ".join(element.get_text(" ", strip=True).split())


def _find_date_cell(row: Tag) -> Optional[Tag]:
    for cell in row.select("td"):
        text = cell.get_text(" ", strip=True)
        if "Valid until" in text or "Expired" in text:
            return cell
    return None


def parse_validity(cell: Optional[Tag], today: Optional[date] = None) -> tuple[Optional[date], Optional[bool]]:
    """Derive (valid_until, is_expired) from a result row's date cell.

    An explicit expired tag always marks the certificate expired; its date
    comes from "Expired on <date>" or any bare date in the cell, and may be
    missing. Otherwise the date is a "Valid until" date or any bare date,
    and expiry is derived by comparing it with ``today``.
    """
    if cell is None:
        return None, None
    today = today or date.today()

    cell_text = _text(cell)
    expired_tag = cell.select_one("strong.govuk-tag--red")
    if expired_tag is not None:
        match = (
            EXPIRED_ON_PATTERN.search(_text(expired_tag))
            or EXPIRED_ON_PATTERN.search(cell_text)
            or BARE_DATE_PATTERN.search(cell_text)
        )
        return _parse_date(match.group(1) if match else None), True

    candidate = None
    for span in cell.select("span:not([class])"):
        match = VALID_UNTIL_PATTERN.search(_text(span))
        if match:
            candidate = match.group(1)
            break

    if candidate is None:
        match = VALID_UNTIL_PATTERN.search(cell_text) or BARE_DATE_PATTERN.search(cell_text)
        if match:
            candidate = match.group(1)

    valid_until = _parse_date(candidate)
    if valid_until is None:
        return None, None
    return valid_until, valid_until < today


def parse_register_html(
    html: str, base_url: str = DEFAULT_BASE_URL, today: Optional[date] = None
) -> list[RegisterCertificate]:
    """Extract certificates from a register results page.

    A page without a results table (no certificates for the postcode) gives
    an empty list. Rows lacking the address link or the rating cell are
    skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    table = soup.select_one("table.govuk-table.epb-search-results")
    if table is None:
        logger.info("No register results table found")
        return []
    body = table.find("tbody")
    if body is None:
        logger.info("Register results table has no body")
        return []

    certificates = []
    for index, row in enumerate(body.select("tr.govuk-table__row")):
        anchor = row.select_one("th.govuk-table__header a.govuk-link")
        rating_cell = row.select_one("td.govuk-table__cell")
        if anchor is None or rating_cell is None:
            logger.warning("Skipping register row %d without address link or rating cell", index)
            continue

        href = anchor.get("href") or ""
        rating = _text(rating_cell).upper() or None
        valid_until, is_expired = parse_validity(_find_date_cell(row), today=today)

        certificates.append(
            RegisterCertificate(
                retrieved_address=_text(anchor),
                retrieved_rating=rating,
                certificate_url=urljoin(base_url + "/", href) if href else base_url,
                valid_until=valid_until,
                is_expired=is_expired,
            )
        )

    logger.info("Parsed %d register certificates", len(certificates))
    return certificates
