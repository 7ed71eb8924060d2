import base64
import io
import json
from decimal import Decimal
from typing import Any

import pytest
import requests
from PIL import Image

import extraction
from extraction import (
    ExtractionError,
    GeminiClient,
    UnsupportedDocument,
    extract_document,
    parse_extraction,
    validate_document,
)
from models import Platform, TransactionType


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "white").save(buf, format="PNG")
    return buf.getvalue()


GOOD_RESULT = {
    "transactions": [
        {
            "date": "2024-07-14",
            "description": "Weekly fares",
            "type": "EARNING",
            "category": "Gross Transportation Fares",
            "grossAmount": 550.0,
            "gstAmount": 50.0,
            "netAmount": 500.0,
            "platform": "Uber",
            "confidence": 0.92,
        },
        {
            "date": "2024-07-15",
            "description": "Service fee",
            "type": "EXPENSE",
            "category": "Uber Service Fees",
            "grossAmount": 137.5,
            "gstAmount": 12.5,
            "platform": "Uber",
        },
    ],
    "summaryNote": "Uber weekly statement",
}


class _FakeResponse:
    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self._body = body
        self.text = body if isinstance(body, str) else json.dumps(body)

    def json(self):
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body


def _stub_post(monkeypatch, response=None, exc=None):
    calls = []

    def _post(url, **kwargs):
        calls.append({"url": url, **kwargs})
        if exc is not None:
            raise exc
        return response

    monkeypatch.setattr(extraction.requests, "post", _post)
    return calls


def _gemini_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


# ---- upload validation -------------------------------------------------------


def test_validate_document_accepts_png_and_pdf():
    validate_document(_png_bytes(), "image/png")
    validate_document(b"%PDF-1.4 ...", "application/pdf")


@pytest.mark.parametrize(
    "data,content_type",
    [
        (b"GIF89a", "image/gif"),
        (b"", "image/png"),
        (b"definitely not a png", "image/png"),
        (b"hello", "text/plain"),
    ],
)
def test_validate_document_rejects(data, content_type):
    with pytest.raises(UnsupportedDocument):
        validate_document(data, content_type)


# ---- response parsing --------------------------------------------------------


def test_parse_extraction_reads_camel_case_candidates():
    result = parse_extraction(json.dumps(GOOD_RESULT))
    assert result.summary_note == "Uber weekly statement"
    first, second = result.transactions
    assert first.type == TransactionType.EARNING
    assert first.platform == Platform.UBER
    assert first.gst_amount == Decimal("50.0")
    assert second.net_amount is None


@pytest.mark.parametrize(
    "text",
    [
        "not json at all",
        "{}",
        json.dumps({"transactions": [dict(GOOD_RESULT["transactions"][0], platform="Lyft")]}),
        json.dumps({"transactions": [GOOD_RESULT["transactions"][0], {"description": "missing fields"}]}),
        json.dumps({"transactions": [dict(GOOD_RESULT["transactions"][0], date="14/07/2024")]}),
    ],
)
def test_any_bad_record_fails_the_whole_batch(text):
    with pytest.raises(ExtractionError):
        parse_extraction(text)


# ---- client ------------------------------------------------------------------


def test_client_requires_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(ExtractionError):
        GeminiClient()


def test_client_sends_document_inline_with_schema(monkeypatch):
    monkeypatch.setenv("GEMINI_MODEL", "gemini-test")
    calls = _stub_post(monkeypatch, _FakeResponse(200, _gemini_body(json.dumps(GOOD_RESULT))))
    data = _png_bytes()

    result = GeminiClient(api_key="k-123").extract(data, "image/png")

    assert len(result.transactions) == 2
    (call,) = calls
    assert "gemini-test:generateContent" in call["url"]
    assert call["headers"]["x-goog-api-key"] == "k-123"
    parts = call["json"]["contents"][0]["parts"]
    assert parts[1]["inlineData"] == {"mimeType": "image/png", "data": base64.b64encode(data).decode("ascii")}
    config = call["json"]["generationConfig"]
    assert config["responseMimeType"] == "application/json"
    assert config["responseSchema"]["required"] == ["transactions"]
    assert "Car Expenses - Fuel" in call["json"]["systemInstruction"]["parts"][0]["text"]


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(500, "upstream exploded"),
        _FakeResponse(429, {"error": {"message": "quota"}}),
        _FakeResponse(200, "<html>"),
        _FakeResponse(200, {"candidates": []}),
        _FakeResponse(200, _gemini_body("```json nope```")),
    ],
)
def test_client_failures_raise_extraction_error(monkeypatch, response):
    _stub_post(monkeypatch, response)
    with pytest.raises(ExtractionError):
        GeminiClient(api_key="k").extract(b"%PDF", "application/pdf")


def test_network_errors_are_not_retried(monkeypatch):
    calls = _stub_post(monkeypatch, exc=requests.exceptions.ConnectionError("offline"))
    with pytest.raises(ExtractionError):
        GeminiClient(api_key="k").extract(b"%PDF", "application/pdf")
    assert len(calls) == 1


def test_extract_document_validates_before_calling_out(monkeypatch):
    calls = _stub_post(monkeypatch, _FakeResponse(200, _gemini_body(json.dumps(GOOD_RESULT))))
    monkeypatch.setenv("GEMINI_API_KEY", "k")
    with pytest.raises(UnsupportedDocument):
        extract_document(b"garbage", "image/jpeg")
    assert calls == []
