"""Tests for the in-process page-extraction agent."""

import asyncio
import base64
import io
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image, ImageDraw
from pypdf import PdfWriter

from epc_reconciler.agent.extraction_agent import LocalExtractionAgent, extract_first_page_text
from epc_reconciler.broker.request_broker import KIND_IMAGE_OCR, KIND_PDF_OCR, RequestBroker
from epc_reconciler.db.models import ConfidenceTier, OcrRequest, OcrStatus

BAND_COLORS = ["#008054", "#2c9f29", "#8DCE46", "#FFD500", "#f7af1d", "#ed6823", "#E9153B"]


def _graphic_data_url(arrow_band=None):
    """400x700 rating graphic with an optional arrow level with one band."""
    image = Image.new("RGB", (400, 700), "white")
    draw = ImageDraw.Draw(image)
    for index, color in enumerate(BAND_COLORS):
        draw.rectangle([20, 100 + 70 * index, 200, 159 + 70 * index], fill=color)
    if arrow_band is not None:
        index = "ABCDEFG".index(arrow_band)
        draw.rectangle([300, 100 + 70 * index, 379, 159 + 70 * index], fill=BAND_COLORS[index])
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def _request(url):
    return OcrRequest(file_url=url, request_id="req-1")


@pytest.fixture
def agent(mock_env):
    return LocalExtractionAgent(RequestBroker(), timeout=10)


class TestExtractFirstPageText:
    def test_blank_page(self):
        writer = PdfWriter()
        writer.add_blank_page(width=200, height=200)
        buffer = io.BytesIO()
        writer.write(buffer)

        assert extract_first_page_text(buffer.getvalue()) == ""


class TestImageRequests:
    def test_reads_band_from_embedded_image(self, agent):
        result = asyncio.run(agent.handle_image_request(_request(_graphic_data_url("E"))))

        assert result.status is OcrStatus.FOUND
        assert result.value == "E"
        assert result.confidence is ConfidenceTier.MEDIUM
        assert result.raw_result["potential_band"] == "E"

    def test_graphic_without_arrows(self, agent):
        result = asyncio.run(agent.handle_image_request(_request(_graphic_data_url())))

        assert result.status is OcrStatus.NOT_FOUND
        assert result.error == "Could not identify distinct & validated current/potential bands."

    def test_undecodable_image(self, agent):
        result = asyncio.run(agent.handle_image_request(_request("data:image/png;base64,bm90IGFuIGltYWdl")))

        assert result.status is OcrStatus.ERROR

    def test_unsupported_url(self, agent):
        result = asyncio.run(agent.handle_image_request(_request("ftp://media.example/epc.png")))

        assert result.status is OcrStatus.ERROR
        assert "Unsupported file URL" in result.error

    def test_downloads_remote_image(self, agent):
        png = base64.b64decode(_graphic_data_url("B").split(",", 1)[1])
        response = MagicMock(content=png)

        with patch.object(agent.client, "get", return_value=response) as get:
            result = asyncio.run(agent.handle_image_request(_request("https://media.example/epc.png")))

        get.assert_called_once_with("https://media.example/epc.png")
        assert result.value == "B"


class TestPdfRequests:
    def test_reads_rating_from_text(self, agent):
        text = (
            "Energy performance certificate (EPC)\n7 Mill Lane\nYork\nYO1 7HH\n"
            "This property's energy rating is D. It has the potential to be C."
        )

        with patch.object(agent.client, "get", return_value=MagicMock(content=b"%PDF")):
            with patch("epc_reconciler.agent.extraction_agent.extract_first_page_text", return_value=text):
                result = asyncio.run(agent.handle_pdf_request(_request("https://media.example/epc.pdf")))

        assert result.status is OcrStatus.FOUND
        assert result.value == "D"
        assert result.raw_result["full_address"] == "7 Mill Lane, York, YO1 7HH"

    def test_no_rating_in_text(self, agent):
        with patch.object(agent.client, "get", return_value=MagicMock(content=b"%PDF")):
            with patch("epc_reconciler.agent.extraction_agent.extract_first_page_text", return_value="Floor plan"):
                result = asyncio.run(agent.handle_pdf_request(_request("https://media.example/epc.pdf")))

        assert result.status is OcrStatus.NOT_FOUND
        assert result.error == "No rating found in certificate text"

    def test_unreadable_pdf(self, agent):
        with patch.object(agent.client, "get", return_value=MagicMock(content=b"not a pdf")):
            result = asyncio.run(agent.handle_pdf_request(_request("https://media.example/epc.pdf")))

        assert result.status is OcrStatus.ERROR


class TestBrokerRoundTrip:
    def test_image_request_through_broker(self, mock_env):
        broker = RequestBroker()
        agent = LocalExtractionAgent(broker, timeout=10)

        async def run():
            try:
                return await broker.request(KIND_IMAGE_OCR, _graphic_data_url("C"))
            finally:
                await agent.aclose()

        result = asyncio.run(run())

        assert result.status is OcrStatus.FOUND
        assert result.value == "C"
        assert broker.pending_count() == 0

    def test_unexpected_failure_still_replies(self, mock_env):
        broker = RequestBroker()
        agent = LocalExtractionAgent(broker, timeout=10)

        async def run():
            with patch.object(agent, "handle_pdf_request", side_effect=RuntimeError("boom")):
                try:
                    return await broker.request(KIND_PDF_OCR, "https://media.example/epc.pdf")
                finally:
                    await agent.aclose()

        result = asyncio.run(run())

        assert result.status is OcrStatus.ERROR
        assert result.error == "boom"
