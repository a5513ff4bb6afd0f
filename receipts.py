import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from rapidfuzz.distance import Levenshtein

from config import Settings, get_settings
from errors import ValidationError
from money import parse_amount
from periods import to_naive_utc


logger = logging.getLogger(__name__)

RECEIPT_CATEGORIES = (
    "housing",
    "transportation",
    "groceries",
    "utilities",
    "entertainment",
    "food",
    "shopping",
    "healthcare",
    "education",
    "personal",
    "travel",
    "insurance",
    "gifts",
    "bills",
    "other-expense",
)
FALLBACK_CATEGORY = "other-expense"
MAX_RECEIPT_BYTES = 5 * 1024 * 1024

RECEIPT_PROMPT = f"""
Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: {",".join(RECEIPT_CATEGORIES)})

Only respond with valid JSON in this exact format:
{{
  "amount": number,
  "date": "ISO date string",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}}

If it is not a receipt, return an empty object
"""

_CODE_FENCE = re.compile(r"```(?:json)?\n?")


class ReceiptScanError(RuntimeError):
    pass


@dataclass(frozen=True)
class ScannedReceipt:
    amount_cents: int
    date: Optional[datetime]
    description: Optional[str]
    merchant_name: Optional[str]
    category: str


def snap_category(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if not value:
        return FALLBACK_CATEGORY
    if value in RECEIPT_CATEGORIES:
        return value
    best_distance: Optional[int] = None
    best: Optional[str] = None
    for category in RECEIPT_CATEGORIES:
        dist = int(Levenshtein.distance(value, category))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = category
    if best is not None and best_distance is not None and best_distance <= 2:
        return best
    return FALLBACK_CATEGORY


def _parse_date(value: object) -> Optional[datetime]:
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def parse_receipt_response(text: str) -> ScannedReceipt:
    cleaned = _CODE_FENCE.sub("", text or "").strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid response format from receipt model") from exc
    if not isinstance(data, dict):
        raise ValidationError("Invalid response format from receipt model")
    if not data:
        raise ValidationError("The uploaded image is not a receipt")
    if data.get("amount") in (None, ""):
        raise ValidationError("Receipt amount could not be read")

    return ScannedReceipt(
        amount_cents=parse_amount(str(data["amount"])),
        date=_parse_date(data.get("date")),
        description=data.get("description") or None,
        merchant_name=data.get("merchantName") or None,
        category=snap_category(data.get("category")),
    )


class ReceiptScanner:
    def __init__(self, settings: Optional[Settings] = None, model=None) -> None:
        self.settings = settings or get_settings()
        self._model = model

    def _get_model(self):
        if self._model is None:
            import google.generativeai as genai

            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(self.settings.gemini_model)
        return self._model

    def scan(self, image: bytes, mime_type: str) -> ScannedReceipt:
        if not (mime_type or "").startswith("image/"):
            raise ValidationError("Receipt must be an image")
        if not image:
            raise ValidationError("Receipt image is empty")
        if len(image) > MAX_RECEIPT_BYTES:
            raise ValidationError("Receipt image must be smaller than 5MB")
        try:
            response = self._get_model().generate_content(
                [{"mime_type": mime_type, "data": image}, RECEIPT_PROMPT]
            )
            text = response.text
        except Exception as exc:
            logger.error(f"receipt_scan_failed: error={exc}")
            raise ReceiptScanError("Failed to scan receipt") from exc
        receipt = parse_receipt_response(text)
        logger.info(
            f"receipt_scanned: amount_cents={receipt.amount_cents} "
            f"category={receipt.category}"
        )
        return receipt
