"""In-process page-extraction agent answering image and PDF OCR requests.

Requests arrive through the broker as a file URL; the agent works in the
background and replies with an :class:`OcrResult` via
:meth:`RequestBroker.complete`, exactly as an out-of-process agent would.
"""

import asyncio
import io
import logging
from typing import Optional

import httpx
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from epc_reconciler.agent.epc_text import extract_epc_from_text
from epc_reconciler.broker.request_broker import KIND_IMAGE_OCR, KIND_PDF_OCR, RequestBroker
from epc_reconciler.db.models import ConfidenceTier, OcrRequest, OcrResult, OcrStatus
from epc_reconciler.imaging.band_analyzer import analyze_band_image
from epc_reconciler.imaging.raster import RasterBuffer, RasterDecodeError
from epc_reconciler.utils.config import settings

logger = logging.getLogger(__name__)


def extract_first_page_text(pdf_bytes: bytes) -> str:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    if not reader.pages:
        return ""
    return reader.pages[0].extract_text() or ""


class LocalExtractionAgent:
    def __init__(self, broker: RequestBroker, timeout: Optional[float] = None):
        self.broker = broker
        self.client = httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )
        self._tasks: set[asyncio.Task] = set()
        deadline = timeout or settings.ocr_timeout_seconds
        broker.register(KIND_IMAGE_OCR, self._dispatch_image, deadline)
        broker.register(KIND_PDF_OCR, self._dispatch_pdf, deadline)

    async def _dispatch_image(self, request_id: str, file_url: str) -> None:
        request = OcrRequest(file_url=file_url, request_id=request_id)
        self._spawn(KIND_IMAGE_OCR, request, self.handle_image_request)

    async def _dispatch_pdf(self, request_id: str, file_url: str) -> None:
        request = OcrRequest(file_url=file_url, request_id=request_id)
        self._spawn(KIND_PDF_OCR, request, self.handle_pdf_request)

    def _spawn(self, kind: str, request: OcrRequest, handler) -> None:
        async def run():
            try:
                result = await handler(request)
            except Exception as e:
                logger.exception("Unexpected %s failure for request %s", kind, request.request_id)
                result = OcrResult(request_id=request.request_id, status=OcrStatus.ERROR, error=str(e))
            self.broker.complete(kind, request.request_id, result)

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _download(self, url: str) -> bytes:
        if not url.lower().startswith(("http://", "https://")):
            raise ValueError(f"Unsupported file URL: {url[:40]}")
        response = await self.client.get(url)
        response.raise_for_status()
        return response.content

    async def handle_image_request(self, request: OcrRequest) -> OcrResult:
        """Decode the certificate image and read its bands by colour."""
        try:
            if request.file_url.startswith("data:"):
                raster = RasterBuffer.from_data_url(request.file_url)
            else:
                raster = RasterBuffer.from_bytes(await self._download(request.file_url))
            analysis = await asyncio.to_thread(analyze_band_image, raster)
        except (httpx.HTTPError, RasterDecodeError, ValueError) as e:
            logger.warning("Image OCR failed for request %s: %s", request.request_id, e)
            return OcrResult(request_id=request.request_id, status=OcrStatus.ERROR, error=str(e))

        raw = analysis.model_dump()
        if not analysis.succeeded:
            return OcrResult(
                request_id=request.request_id,
                status=OcrStatus.NOT_FOUND,
                error=analysis.error,
                raw_result=raw,
            )
        return OcrResult(
            request_id=request.request_id,
            status=OcrStatus.FOUND,
            value=analysis.current_band,
            confidence=ConfidenceTier.MEDIUM,
            raw_result=raw,
        )

    async def handle_pdf_request(self, request: OcrRequest) -> OcrResult:
        """Download the certificate PDF and read its first page's text."""
        try:
            pdf_bytes = await self._download(request.file_url)
            text = await asyncio.to_thread(extract_first_page_text, pdf_bytes)
        except (httpx.HTTPError, PdfReadError, ValueError) as e:
            logger.warning("PDF OCR failed for request %s: %s", request.request_id, e)
            return OcrResult(request_id=request.request_id, status=OcrStatus.ERROR, error=str(e))

        extracted = extract_epc_from_text(text)
        raw = extracted.model_dump()
        if not extracted.current_rating:
            return OcrResult(
                request_id=request.request_id,
                status=OcrStatus.NOT_FOUND,
                error="No rating found in certificate text",
                raw_result=raw,
            )
        return OcrResult(
            request_id=request.request_id,
            status=OcrStatus.FOUND,
            value=extracted.current_rating,
            confidence=ConfidenceTier.MEDIUM,
            raw_result=raw,
        )

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.client.aclose()
