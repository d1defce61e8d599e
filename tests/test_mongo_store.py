"""
MongoStore against mocked motor collections: checks the queries it issues.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.database import MongoStore, certificate_helper, finalization_helper, stage_helper


@pytest.fixture
def collections():
    cols = {}

    def get(name):
        if name not in cols:
            col = MagicMock()
            col.insert_one = AsyncMock()
            col.find_one = AsyncMock(return_value=None)
            col.find_one_and_update = AsyncMock(return_value=None)
            col.update_one = AsyncMock()
            col.create_index = AsyncMock()
            cols[name] = col
        return cols[name]

    db = MagicMock()
    db.__getitem__.side_effect = get
    db.name = "traceability_test"
    return db, get


async def test_stage_create_reports_duplicate(collections):
    db, col = collections
    store = MongoStore(db)
    assert await store.create_stage_if_absent({"stage_id": "STG-1"}) is True

    col("verification_stages").insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert await store.create_stage_if_absent({"stage_id": "STG-2"}) is False


async def test_finalization_create_reports_duplicate(collections):
    db, col = collections
    col("finalizations").insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert await MongoStore(db).create_finalization_if_absent({"batch_id": "B1"}) is False


async def test_insert_does_not_mutate_caller_doc(collections):
    db, col = collections
    doc = {"batch_id": "B1"}

    async def add_id(inserted):
        inserted["_id"] = "oid"

    col("finalizations").insert_one.side_effect = add_id
    await MongoStore(db).create_finalization_if_absent(doc)
    assert "_id" not in doc


async def test_status_update_is_compare_and_set(collections):
    db, col = collections
    store = MongoStore(db)
    await store.update_stage_status("STG-1", "PENDING", {"status": "APPROVED"})

    call = col("verification_stages").find_one_and_update.await_args
    assert call.args[0] == {"stage_id": "STG-1", "status": "PENDING"}
    assert call.args[1] == {"$set": {"status": "APPROVED"}}
    assert call.kwargs["return_document"] == ReturnDocument.AFTER


async def test_anchor_only_fills_unanchored_records(collections):
    db, col = collections
    store = MongoStore(db)
    col("finalizations").update_one.return_value = MagicMock(modified_count=0)

    assert await store.set_finalization_anchor("B1", "0xabc", "0xev") is False
    filter_, update = col("finalizations").update_one.await_args.args
    assert filter_ == {"batch_id": "B1", "anchored_at": None}
    assert update["$set"]["anchor_tx_id"] == "0xabc"
    assert update["$set"]["anchored_at"] is not None


async def test_ensure_indexes(collections):
    db, col = collections
    await MongoStore(db).ensure_indexes()
    stage_calls = [c.kwargs.get("unique") for c in col("verification_stages").create_index.await_args_list]
    assert stage_calls == [True, True]
    col("finalizations").create_index.assert_awaited_once_with("batch_id", unique=True)


def test_helpers_render_iso_dates():
    at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert stage_helper({"stage_id": "STG-1", "timestamp": at})["timestamp"] == "2024-05-01T12:00:00.000Z"
    assert finalization_helper({"batch_id": "B1", "finalized_at": at, "anchored_at": None})["anchoredAt"] is None
    assert certificate_helper({"certificate_id": "CERT-1", "valid_to": at})["validTo"] == "2024-05-01T12:00:00.000Z"


async def test_unanchored_query_can_exclude_recent_records(collections):
    db, col = collections
    cursor = MagicMock()
    cursor.sort.return_value.limit.return_value.__aiter__.return_value = iter([])
    col("certificates").find = MagicMock(return_value=cursor)
    cutoff = datetime(2024, 5, 1, tzinfo=timezone.utc)

    assert await MongoStore(db).list_unanchored_certificates(10, created_before=cutoff) == []
    query = col("certificates").find.call_args.args[0]
    assert query == {"anchored_at": None, "issued_at": {"$lte": cutoff}}
