import base64
import logging
from typing import Optional

import httpx

from epc_reconciler.utils.config import settings

logger = logging.getLogger(__name__)


def is_fetchable_url(url: Optional[str]) -> bool:
    return bool(url) and url.lower().startswith(("http://", "https://"))


class ImageFetcher:
    """Downloads a certificate image and re-encodes it as a ``data:`` URL.

    Working from an embedded copy keeps pixel access independent of where the
    image is hosted.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.client = httpx.AsyncClient(
            timeout=timeout or settings.http_timeout_seconds,
            follow_redirects=True,
        )

    async def fetch_and_embed(self, url: Optional[str]) -> Optional[str]:
        """Return ``data:<mime>;base64,...`` for an http(s) image URL, or None."""
        if not is_fetchable_url(url):
            return None

        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Could not fetch image %s: %s", url, e)
            return None

        if not 200 <= response.status_code < 300:
            logger.warning("Image fetch for %s returned status %d", url, response.status_code)
            return None

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type.startswith("image/"):
            logger.warning("Fetched %s is not an image (content type '%s')", url, content_type)
            return None

        encoded = base64.b64encode(response.content).decode("ascii")
        return f"data:{content_type};base64,{encoded}"

    async def aclose(self):
        await self.client.aclose()
