import asyncio
from decimal import Decimal

import pytest

from expense_scan.services.errors import NotFoundError, ValidationError
from expense_scan.services.record_store import ExpenseRecordStore
from expense_scan.services.storage import LocalObjectStore, SqlKeyValueStore


def test_sql_key_value_store(session_factory):
    store = SqlKeyValueStore(session_factory)

    async def scenario():
        assert await store.get_item("queue") is None
        await store.set_item("queue", "[]")
        await store.set_item("queue", '[{"id": "a"}]')
        value = await store.get_item("queue")
        await store.remove_item("queue")
        await store.remove_item("queue")
        return value, await store.get_item("queue")

    value, after = asyncio.run(scenario())
    assert value == '[{"id": "a"}]'
    assert after is None


def test_object_store_round_trip(tmp_path):
    store = LocalObjectStore(tmp_path)

    async def scenario():
        path = await store.upload("c1/receipt.jpg", b"image-bytes")
        return path, await store.exists(path), await store.download(path)

    path, exists, data = asyncio.run(scenario())
    assert path == "c1/receipt.jpg"
    assert exists is True
    assert data == b"image-bytes"


def test_object_store_missing_file(tmp_path):
    store = LocalObjectStore(tmp_path)

    assert asyncio.run(store.exists("nope.jpg")) is False
    with pytest.raises(NotFoundError, match="Receipt file not found"):
        asyncio.run(store.download("nope.jpg"))


@pytest.mark.parametrize("path", ["../outside.jpg", "a/../../outside.jpg", "", "  "])
def test_object_store_rejects_bad_paths(tmp_path, path):
    store = LocalObjectStore(tmp_path / "root")
    with pytest.raises(ValidationError):
        asyncio.run(store.download(path))


def test_record_store_create_get_update(session_factory):
    records = ExpenseRecordStore(session_factory)

    async def scenario():
        expense_id = await records.create(id="exp-1", couple_id="c1", user_id="u1")
        await records.update(expense_id, {"status": "ocr_complete", "merchant": "WALMART", "amount": Decimal("49.14")})
        return await records.get(expense_id)

    expense = asyncio.run(scenario())
    assert expense.status == "ocr_complete"
    assert expense.merchant == "WALMART"
    assert expense.amount == Decimal("49.14")


def test_record_store_update_unknown_expense(session_factory):
    records = ExpenseRecordStore(session_factory)
    with pytest.raises(NotFoundError):
        asyncio.run(records.update("missing", {"status": "ocr_failed"}))


def test_record_store_rejects_unknown_fields(session_factory):
    records = ExpenseRecordStore(session_factory)
    expense_id = asyncio.run(records.create(couple_id="c1", user_id="u1"))
    with pytest.raises(ValueError):
        asyncio.run(records.update(expense_id, {"couple_id": "c2"}))


def test_record_store_history_is_per_couple_and_categorized(session_factory):
    records = ExpenseRecordStore(session_factory)

    async def scenario():
        await records.create(couple_id="c1", user_id="u1", merchant="Starbucks", category="food", amount=Decimal("5.10"))
        await records.create(couple_id="c1", user_id="u2", merchant="Shell", category="transport")
        await records.create(couple_id="c1", user_id="u1", merchant="Pending", category=None)
        await records.create(couple_id="c2", user_id="u3", merchant="Costco", category="groceries")
        return await records.history("c1"), await records.history("c1", limit=1)

    history, limited = asyncio.run(scenario())
    assert sorted(r.merchant for r in history) == ["Shell", "Starbucks"]
    assert len(limited) == 1
