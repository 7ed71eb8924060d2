"""
Gemini client that turns receipts and platform statements into transactions
"""
import base64
import io
import json
import logging
import os
import traceback
from typing import Optional

import requests
from dotenv import load_dotenv
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from categories import (
    DIDI_EARNING_CATEGORIES,
    DIDI_EXPENSE_CATEGORIES,
    GENERAL_EXPENSE_CATEGORIES,
    UBER_EARNING_CATEGORIES,
    UBER_EXPENSE_CATEGORIES,
)
from models import ExtractionResult

load_dotenv()

logger = logging.getLogger(__name__)

ALLOWED_TYPES = ['image/jpeg', 'image/png', 'image/webp', 'application/pdf']

EXTRACTION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "transactions": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "date": {"type": "STRING", "description": "ISO date format YYYY-MM-DD"},
                    "description": {"type": "STRING", "description": "Summary of the item"},
                    "type": {"type": "STRING", "enum": ["EARNING", "EXPENSE"]},
                    "category": {
                        "type": "STRING",
                        "description": "Specific category mapping. Use platform terminology or general categories provided.",
                    },
                    "grossAmount": {"type": "NUMBER"},
                    "gstAmount": {"type": "NUMBER"},
                    "netAmount": {"type": "NUMBER"},
                    "platform": {"type": "STRING", "enum": ["Uber", "DiDi", "Ola", "Other"]},
                    "confidence": {"type": "NUMBER"},
                },
                "required": ["description", "type", "grossAmount", "gstAmount", "category", "platform"],
            },
        },
        "summaryNote": {"type": "STRING"},
    },
    "required": ["transactions"],
}


def _join(categories):
    return ", ".join(categories)


SYSTEM_INSTRUCTION = f"""
You are a highly accurate Rideshare Tax Assistant specializing in Australian GST.
Your task is to parse statements (Uber, DiDi, Ola) and business receipts.

Uber Earnings Categories:
- {_join(UBER_EARNING_CATEGORIES)}.

Uber Expense/Deduction Categories:
- {_join(UBER_EXPENSE_CATEGORIES)}.

DiDi Earnings Categories:
- {_join(DIDI_EARNING_CATEGORIES)}.

DiDi Expense/Deduction Categories:
- {_join(DIDI_EXPENSE_CATEGORIES)}.

General Business Expenses (Common to all platforms/receipts):
- {_join(GENERAL_EXPENSE_CATEGORIES)}.

General Rules:
1. Identify Platform (Uber, DiDi, Ola, or Other).
2. Identify Earning vs Expense.
3. Extract date in YYYY-MM-DD.
4. Be extremely precise with GST (usually 1/11th of total for taxable items).
5. Ensure the category strictly matches the terminology provided above.
"""

USER_PROMPT = "Extract tax and GST data from this document using the provided granular categories."


class ExtractionError(Exception):
    """The document could not be turned into a complete batch of transactions."""


class UnsupportedDocument(ValueError):
    """The upload is not a file type or image the extractor accepts."""


def validate_document(data: bytes, content_type: str) -> None:
    """Reject uploads that should never reach the API."""
    if content_type not in ALLOWED_TYPES:
        raise UnsupportedDocument(
            f"Unsupported file type: {content_type}. Supported types are: {', '.join(ALLOWED_TYPES)}"
        )
    if not data:
        raise UnsupportedDocument("Empty file received")
    if content_type == 'application/pdf':
        return

    try:
        image = Image.open(io.BytesIO(data))
        logger.debug(f"Image format: {image.format}, Size: {image.size}, Mode: {image.mode}")
        image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        logger.error("Failed to identify image format")
        raise UnsupportedDocument("Invalid image format or corrupted file")


class GeminiClient:
    """Client for the Gemini generateContent API"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv('GEMINI_API_KEY')
        self.model = os.getenv('GEMINI_MODEL', 'gemini-3-pro-preview')
        self.api_url = os.getenv(
            'GEMINI_API_URL',
            'https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent',
        )
        self.timeout = int(os.getenv('EXTRACTION_TIMEOUT', 60))

        if not self.api_key:
            raise ExtractionError("GEMINI_API_KEY not found in environment variables")

    def build_payload(self, data: bytes, mime_type: str) -> dict:
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [{
                "role": "user",
                "parts": [
                    {"text": USER_PROMPT},
                    {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}},
                ],
            }],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": EXTRACTION_SCHEMA,
            },
        }

    def generate(self, data: bytes, mime_type: str) -> str:
        """Send the document and return the raw JSON text of the first candidate."""
        url = self.api_url.format(model=self.model)
        headers = {
            'Content-Type': 'application/json',
            'x-goog-api-key': self.api_key,
        }
        try:
            response = requests.post(
                url,
                json=self.build_payload(data, mime_type),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"Request to Gemini failed: {str(e)}") from e

        if response.status_code != 200:
            raise ExtractionError(f"Gemini API error: {response.status_code} - {response.text[:500]}")

        try:
            body = response.json()
            return body["candidates"][0]["content"]["parts"][0].get("text") or "{}"
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionError(f"Unexpected Gemini response shape: {str(e)}") from e

    def extract(self, data: bytes, mime_type: str) -> ExtractionResult:
        text = self.generate(data, mime_type)
        return parse_extraction(text)


def parse_extraction(text: str) -> ExtractionResult:
    """Parse the model's JSON. Any invalid record fails the whole batch."""
    try:
        return ExtractionResult.model_validate(json.loads(text))
    except (ValueError, ValidationError) as e:
        logger.error(f"Error parsing extraction response: {str(e)}")
        logger.error(traceback.format_exc())
        raise ExtractionError(f"Malformed extraction response: {str(e)}") from e


def extract_document(data: bytes, mime_type: str) -> ExtractionResult:
    """Validate an upload and extract its transactions."""
    validate_document(data, mime_type)
    return GeminiClient().extract(data, mime_type)
