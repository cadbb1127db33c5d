from __future__ import annotations

import json
import logging
import math
import re
import time
import uuid
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import Settings, get_settings
from schemas import PrefillRow, ReceiptData, ReceiptItem, ReceiptPrefill, ScanResult
from services import FavoriteService

logger = logging.getLogger(__name__)

RECEIPT_PROMPT = """You extract data from shop receipts. Read this receipt and return:

1. The list of items (name, quantity and price of each item), keeping item names in the receipt's language
2. The total price
3. The date (if present)
4. The shop name (if present)

Answer in JSON format:
{
  "items": [
    {"name": "item name", "quantity": "1", "price": 100}
  ],
  "total": 500,
  "date": "2025-12-01",
  "shop": "shop name"
}"""

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
PAYMENT_REQUIRED_MESSAGE = "Payment required. Please add credits to your workspace."

RECEIPT_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}
MAX_RECEIPT_BYTES = 10 * 1024 * 1024

_FENCED_JSON = re.compile(r"```json\n?([\s\S]*?)\n?```")
_FENCED_ANY = re.compile(r"```\n?([\s\S]*?)\n?```")
_BENGALI_DIGITS = str.maketrans("০১২৩৪৫৬৭৮৯", "0123456789")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


class OCRError(RuntimeError):
    kind = "upstream"
    status_code = 500


class OCRRateLimited(OCRError):
    kind = "rate_limited"
    status_code = 429


class OCRPaymentRequired(OCRError):
    kind = "payment_required"
    status_code = 402


class OCRUpstreamError(OCRError):
    pass


def ascii_digits(value: str) -> str:
    return value.translate(_BENGALI_DIGITS)


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            match = _NUMBER.search(ascii_digits(value).replace(",", ""))
            if not match:
                return 0.0
            number = float(match.group(0))
        else:
            return 0.0
    except OverflowError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _to_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _unparsed(text: str) -> ReceiptData:
    return ReceiptData(items=[], total=0, date="", shop="", raw_text=text, parsed=False)


def normalize_reply(text: Optional[str]) -> ReceiptData:
    """Turn a model reply into receipt data without ever raising.

    The reply may wrap its JSON in a ```json fence or a bare ``` fence, or be
    plain JSON. Anything that does not decode to an object becomes an empty
    result carrying the raw text.
    """
    if not isinstance(text, str):
        return _unparsed("")
    match = _FENCED_JSON.search(text) or _FENCED_ANY.search(text)
    candidate = match.group(1) if match else text
    try:
        payload = json.loads(candidate)
    except (ValueError, RecursionError):
        return _unparsed(text)
    if not isinstance(payload, dict):
        return _unparsed(text)
    try:
        return _receipt_from_payload(payload)
    except Exception:
        logger.exception("ocr_reply_unusable")
        return _unparsed(text)


def _receipt_from_payload(payload: dict[str, Any]) -> ReceiptData:
    items: list[ReceiptItem] = []
    raw_items = payload.get("items")
    if isinstance(raw_items, list):
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            items.append(
                ReceiptItem(
                    name=_to_text(raw.get("name")),
                    quantity=_to_text(raw.get("quantity")),
                    price=_to_float(raw.get("price")),
                )
            )
    return ReceiptData(
        items=items,
        total=_to_float(payload.get("total")),
        date=_to_text(payload.get("date")),
        shop=_to_text(payload.get("shop")),
    )


def _post_chat_completion(
    url: str, api_key: str, body: dict[str, Any], *, timeout: float
) -> dict[str, Any]:
    req = Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        if exc.code == 429:
            raise OCRRateLimited(RATE_LIMIT_MESSAGE) from exc
        if exc.code == 402:
            raise OCRPaymentRequired(PAYMENT_REQUIRED_MESSAGE) from exc
        detail = exc.read().decode("utf-8", "replace")[:500]
        logger.error(f"ocr_gateway_error: status={exc.code} body={detail}")
        raise OCRUpstreamError("AI processing failed") from exc
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise OCRUpstreamError("AI processing failed") from exc


class ReceiptOCRService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def extract(self, image_url: str) -> ReceiptData:
        if not image_url or not image_url.strip():
            raise ValueError("Image URL is required")
        if not self.settings.ocr_api_key:
            raise OCRUpstreamError("OCR gateway API key is not configured")

        body = {
            "model": self.settings.ocr_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": RECEIPT_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
        }
        started = time.monotonic()
        payload = _post_chat_completion(
            self.settings.ocr_gateway_url,
            self.settings.ocr_api_key,
            body,
            timeout=self.settings.ocr_timeout_secs,
        )
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OCRUpstreamError("No response from AI") from exc
        if not content:
            raise OCRUpstreamError("No response from AI")

        data = normalize_reply(content)
        logger.info(
            f"ocr_completed: items={len(data.items)} parsed={data.parsed} "
            f"duration={time.monotonic() - started:.2f}s"
        )
        return data

    def scan(self, image_url: str) -> ScanResult:
        try:
            return ScanResult(success=True, data=self.extract(image_url))
        except OCRError as exc:
            logger.warning(f"ocr_failed: kind={exc.kind} error={exc}")
            return ScanResult(success=False, error=str(exc), error_kind=exc.kind)
        except ValueError as exc:
            return ScanResult(success=False, error=str(exc), error_kind="upstream")


def _price_to_cents(price: float) -> int:
    try:
        cents = (Decimal(str(price)) * 100).quantize(Decimal("1"), ROUND_HALF_UP)
    except InvalidOperation:
        return 0
    return max(int(cents), 0)


def _receipt_date(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(ascii_digits(value).strip())
    except ValueError:
        return None


def build_prefill(data: ReceiptData, favorites: FavoriteService) -> ReceiptPrefill:
    """Map extracted receipt data onto the expense forms.

    One item fills the single-expense form, several fill the batch form.
    Names matching a favorite borrow its category, unit and quantity.
    """
    rows: list[PrefillRow] = []
    for item in data.items:
        name = item.name.strip()
        if not name:
            continue
        quantity = ascii_digits(item.quantity).strip() or None
        category_id = unit_id = None
        favorite = favorites.match(name)
        if favorite:
            category_id = favorite.category_id
            unit_id = favorite.default_unit_id
            if quantity is None and favorite.default_quantity is not None:
                quantity = format(favorite.default_quantity.normalize(), "f")
        rows.append(
            PrefillRow(
                item_name=name,
                quantity=quantity,
                total_cents=_price_to_cents(item.price),
                category_id=category_id,
                unit_id=unit_id,
            )
        )

    if not rows and data.total > 0:
        rows.append(
            PrefillRow(item_name=data.shop, total_cents=_price_to_cents(data.total))
        )

    if not rows:
        mode = "empty"
    elif len(rows) == 1:
        mode = "single"
    else:
        mode = "batch"
    return ReceiptPrefill(
        mode=mode,
        expense_date=_receipt_date(data.date),
        shop=data.shop,
        rows=rows,
        raw_text=data.raw_text,
    )


class ReceiptStorage:
    """Receipt images on local disk, exposed through time-limited signed URLs."""

    def __init__(
        self, root: Optional[Path] = None, settings: Optional[Settings] = None
    ) -> None:
        self.settings = settings or get_settings()
        self.root = (root or self.settings.receipts_dir).resolve()

    def _serializer(self) -> URLSafeTimedSerializer:
        return URLSafeTimedSerializer(self.settings.auth_secret, salt="receipt-url")

    def save(self, user_id: int, content: bytes, content_type: str) -> str:
        suffix = RECEIPT_CONTENT_TYPES.get((content_type or "").lower())
        if not suffix:
            raise ValueError("Unsupported receipt image type")
        if not content:
            raise ValueError("Receipt file is empty")
        if len(content) > MAX_RECEIPT_BYTES:
            raise ValueError("Receipt file is too large")

        relative = f"{user_id}/{uuid.uuid4().hex}{suffix}"
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        logger.info(f"receipt_saved: user={user_id} path={relative} bytes={len(content)}")
        return relative

    def resolve(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if self.root not in path.parents:
            raise ValueError("Invalid receipt path")
        return path

    def sign(self, relative: str) -> str:
        return self._serializer().dumps({"p": relative})

    def signed_url(self, relative: str) -> str:
        base = self.settings.public_base_url.rstrip("/")
        return f"{base}/receipts/signed/{self.sign(relative)}"

    def open_signed(self, token: str) -> Path:
        try:
            data = self._serializer().loads(
                token, max_age=self.settings.receipt_url_max_age_secs
            )
        except SignatureExpired as exc:
            raise ValueError("Receipt link expired") from exc
        except BadSignature as exc:
            raise ValueError("Invalid receipt link") from exc
        relative = data.get("p") if isinstance(data, dict) else None
        if not isinstance(relative, str):
            raise ValueError("Invalid receipt link")
        path = self.resolve(relative)
        if not path.is_file():
            raise FileNotFoundError(relative)
        return path

    def purge_orphans(
        self,
        referenced: set[str],
        older_than: timedelta = timedelta(hours=24),
        now: Optional[float] = None,
    ) -> int:
        if not self.root.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - older_than.total_seconds()
        removed = 0
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(self.root).as_posix()
            if relative in referenced or path.stat().st_mtime > cutoff:
                continue
            path.unlink()
            removed += 1
        return removed
