"""Shared HTTP helpers for the outbound clients."""

import logging
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5


def retry_after_seconds(value: Optional[str], now: Optional[datetime] = None) -> int:
    """Seconds to wait from a Retry-After header.

    Accepts both delay-seconds ("120") and HTTP-date
    ("Wed, 21 Oct 2026 07:28:00 GMT") forms; anything else falls back to
    the default delay.
    """
    if value is None or not str(value).strip():
        return DEFAULT_RETRY_AFTER_SECONDS
    value = str(value).strip()

    try:
        return max(int(value), 0)
    except ValueError:
        pass

    try:
        retry_at = dateutil_parser.parse(value)
    except (ValueError, OverflowError) as e:
        logger.warning("Unparseable Retry-After header '%s': %s", value, e)
        return DEFAULT_RETRY_AFTER_SECONDS

    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(int((retry_at - now).total_seconds()), 0)
