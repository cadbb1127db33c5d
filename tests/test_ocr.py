import copy
import io
import os
import time
from datetime import date, timedelta
from decimal import Decimal
from urllib.error import HTTPError

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import ocr
from config import get_settings
from database import Base
from ocr import (
    OCRPaymentRequired,
    OCRRateLimited,
    OCRUpstreamError,
    ReceiptOCRService,
    ReceiptStorage,
    build_prefill,
    normalize_reply,
)
from schemas import CategoryIn, FavoriteIn, ReceiptData, ReceiptItem, UnitIn
from services import CategoryService, FavoriteService, UnitService


def _settings(**overrides):
    settings = copy.copy(get_settings())
    settings.ocr_api_key = "test-key"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_normalize_reply_reads_json_fence() -> None:
    reply = (
        "Here is the receipt:\n```json\n"
        '{"items": [{"name": "চাল", "quantity": "2 kg", "price": 120}],'
        ' "total": 120, "date": "2025-06-01", "shop": "Karim Store"}\n```'
    )

    data = normalize_reply(reply)

    assert data.parsed is True
    assert data.items == [ReceiptItem(name="চাল", quantity="2 kg", price=120)]
    assert data.total == 120
    assert data.date == "2025-06-01"
    assert data.shop == "Karim Store"
    assert data.raw_text is None


def test_normalize_reply_reads_bare_fence_and_plain_json() -> None:
    bare = normalize_reply('```\n{"items": [], "total": 50, "date": "", "shop": ""}\n```')
    plain = normalize_reply('{"total": 75}')

    assert bare.parsed and bare.total == 50
    assert plain.parsed and plain.total == 75 and plain.items == []


def test_normalize_reply_never_raises_on_garbage() -> None:
    for text in ["Sorry, I cannot read this image.", "```json\n{broken\n```", "[1, 2]", ""]:
        data = normalize_reply(text)
        assert data.parsed is False
        assert data.items == []
        assert data.total == 0
        assert data.date == ""
        assert data.shop == ""
        assert data.raw_text == text

    assert normalize_reply(None).parsed is False


def test_normalize_reply_coerces_loose_values() -> None:
    data = normalize_reply(
        '{"items": [{"name": "ডিম", "quantity": 12, "price": "১২০ টাকা"}, "junk",'
        ' {"name": null, "price": true}], "total": "1,250.50", "date": null, "shop": 7}'
    )

    assert data.items[0] == ReceiptItem(name="ডিম", quantity="12", price=120.0)
    assert data.items[1] == ReceiptItem(name="", quantity="", price=0.0)
    assert len(data.items) == 2
    assert data.total == 1250.5
    assert data.date == ""
    assert data.shop == "7"


def test_normalize_reply_absorbs_numbers_too_wide_for_float() -> None:
    huge = "1" + "0" * 400
    data = normalize_reply(
        f'{{"items": [{{"name": "Rice", "quantity": "1", "price": {huge}}}],'
        f' "total": {huge}, "date": "", "shop": "A"}}'
    )

    assert data.parsed is True
    assert data.total == 0
    assert data.items == [ReceiptItem(name="Rice", quantity="1", price=0.0)]


def test_scan_survives_oversized_price(monkeypatch) -> None:
    reply = '```json\n{"items": [{"name": "Oil", "price": 9' + "9" * 400 + '}]}\n```'
    monkeypatch.setattr(ocr, "_post_chat_completion", lambda *a, **k: _gateway_reply(reply))

    result = ReceiptOCRService(_settings()).scan("https://example.test/r.jpg")

    assert result.success is True
    assert result.data.items[0].price == 0.0


def test_raw_text_serializes_under_camel_case_key() -> None:
    dumped = normalize_reply("nope").model_dump(by_alias=True)
    assert dumped["rawText"] == "nope"


def _gateway_reply(content: str) -> dict:
    return {"choices": [{"message": {"content": content}}]}


def test_scan_success(monkeypatch) -> None:
    calls = []

    def fake_post(url, api_key, body, *, timeout):
        calls.append((url, api_key, body))
        return _gateway_reply('```json\n{"items": [], "total": 10, "shop": "A"}\n```')

    monkeypatch.setattr(ocr, "_post_chat_completion", fake_post)

    result = ReceiptOCRService(_settings()).scan("https://example.test/r.jpg")

    assert result.success is True
    assert result.data.total == 10
    _, api_key, body = calls[0]
    assert api_key == "test-key"
    image_part = body["messages"][0]["content"][1]
    assert image_part["image_url"]["url"] == "https://example.test/r.jpg"


@pytest.mark.parametrize(
    "error,kind",
    [
        (OCRRateLimited("Rate limit exceeded. Please try again later."), "rate_limited"),
        (OCRPaymentRequired("Payment required."), "payment_required"),
        (OCRUpstreamError("AI processing failed"), "upstream"),
    ],
)
def test_scan_turns_gateway_errors_into_failed_results(monkeypatch, error, kind) -> None:
    def fake_post(*args, **kwargs):
        raise error

    monkeypatch.setattr(ocr, "_post_chat_completion", fake_post)

    result = ReceiptOCRService(_settings()).scan("https://example.test/r.jpg")

    assert result.success is False
    assert result.error_kind == kind
    assert result.error == str(error)
    assert result.data is None


def test_scan_without_content_or_key_fails_cleanly(monkeypatch) -> None:
    monkeypatch.setattr(
        ocr, "_post_chat_completion", lambda *a, **k: {"choices": []}
    )
    assert ReceiptOCRService(_settings()).scan("https://x.test/r.jpg").error == (
        "No response from AI"
    )
    missing_key = ReceiptOCRService(_settings(ocr_api_key="")).scan("https://x.test")
    assert missing_key.success is False
    assert ReceiptOCRService(_settings()).scan("  ").error == "Image URL is required"


@pytest.mark.parametrize(
    "status,expected",
    [(429, OCRRateLimited), (402, OCRPaymentRequired), (500, OCRUpstreamError)],
)
def test_gateway_status_codes_map_to_errors(monkeypatch, status, expected) -> None:
    def fake_urlopen(req, timeout):
        raise HTTPError(req.full_url, status, "error", {}, io.BytesIO(b"upstream says no"))

    monkeypatch.setattr(ocr, "urlopen", fake_urlopen)

    with pytest.raises(expected):
        ocr._post_chat_completion("https://gw.test", "k", {"model": "m"}, timeout=1)


def test_prefill_single_item_uses_favorite_defaults() -> None:
    with _session() as session:
        groceries = CategoryService(session, 1).create(CategoryIn(name="Groceries"))
        kg = UnitService(session, 1).create(UnitIn(name="kg"))
        FavoriteService(session, 1).create(
            FavoriteIn(
                item_name="Rice",
                category_id=groceries.id,
                default_unit_id=kg.id,
                default_quantity=Decimal("5"),
            )
        )
        data = ReceiptData(
            items=[ReceiptItem(name="rice", quantity="", price=120.5)],
            total=120.5,
            date="২০২৫-০৬-০১",
            shop="Karim Store",
        )

        prefill = build_prefill(data, FavoriteService(session, 1))

        assert prefill.mode == "single"
        assert prefill.expense_date == date(2025, 6, 1)
        row = prefill.rows[0]
        assert row.total_cents == 12050
        assert row.category_id == groceries.id
        assert row.unit_id == kg.id
        assert row.quantity == "5"


def test_prefill_several_items_goes_to_batch_mode() -> None:
    with _session() as session:
        data = ReceiptData(
            items=[
                ReceiptItem(name="Rice", quantity="২", price=240),
                ReceiptItem(name="Oil", quantity="1", price=190),
                ReceiptItem(name=" ", price=5),
            ],
            total=430,
            date="not a date",
        )

        prefill = build_prefill(data, FavoriteService(session, 1))

        assert prefill.mode == "batch"
        assert [r.item_name for r in prefill.rows] == ["Rice", "Oil"]
        assert prefill.rows[0].quantity == "2"
        assert prefill.rows[0].category_id is None
        assert prefill.expense_date is None


def test_prefill_falls_back_to_total_or_empty() -> None:
    with _session() as session:
        favorites = FavoriteService(session, 1)

        total_only = build_prefill(ReceiptData(total=99, shop="Tea stall"), favorites)
        assert total_only.mode == "single"
        assert total_only.rows[0].item_name == "Tea stall"
        assert total_only.rows[0].total_cents == 9900

        unreadable = build_prefill(normalize_reply("blurry"), favorites)
        assert unreadable.mode == "empty"
        assert unreadable.rows == []
        assert unreadable.raw_text == "blurry"


def test_receipt_storage_signed_urls(tmp_path) -> None:
    storage = ReceiptStorage(root=tmp_path, settings=_settings())

    relative = storage.save(7, b"\x89PNG fake", "image/png")
    token = storage.sign(relative)

    assert relative.startswith("7/") and relative.endswith(".png")
    assert storage.open_signed(token).read_bytes() == b"\x89PNG fake"
    assert storage.signed_url(relative).endswith(f"/receipts/signed/{token}")

    with pytest.raises(ValueError, match="Invalid receipt link"):
        storage.open_signed(token + "x")
    with pytest.raises(ValueError):
        storage.save(7, b"data", "application/pdf")
    with pytest.raises(ValueError):
        storage.resolve("../outside.png")


def test_receipt_links_expire(tmp_path) -> None:
    storage = ReceiptStorage(root=tmp_path, settings=_settings(receipt_url_max_age_secs=-1))
    relative = storage.save(1, b"img", "image/jpeg")

    with pytest.raises(ValueError, match="expired"):
        storage.open_signed(storage.sign(relative))


def test_purge_only_removes_old_unreferenced_receipts(tmp_path) -> None:
    storage = ReceiptStorage(root=tmp_path, settings=_settings())
    kept = storage.save(1, b"a", "image/jpeg")
    orphan = storage.save(1, b"b", "image/jpeg")
    fresh = storage.save(1, b"c", "image/jpeg")

    old = time.time() - timedelta(hours=30).total_seconds()
    for relative in (kept, orphan):
        os.utime(tmp_path / relative, (old, old))

    removed = storage.purge_orphans({kept}, older_than=timedelta(hours=24))

    assert removed == 1
    assert (tmp_path / kept).exists()
    assert not (tmp_path / orphan).exists()
    assert (tmp_path / fresh).exists()
