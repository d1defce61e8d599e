import random
from datetime import datetime, timezone

from app.certificate_issuer import temperature_summary
from db_seeding import build_seed_documents


def test_seed_is_reproducible():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    a = build_seed_documents(3, random.Random(7), now)
    b = build_seed_documents(3, random.Random(7), now)
    assert a == b


def test_seed_documents_link_to_batches():
    docs = build_seed_documents(4, random.Random(1), datetime(2024, 6, 1, tzinfo=timezone.utc))
    batch_ids = {b["batch_id"] for b in docs["batches"]}
    assert len(batch_ids) == 4
    assert {s["batch_id"] for s in docs["nfc_seals"]} <= batch_ids
    assert len(docs["temperature_readings"]) == 4 * 24

    readings = [r for r in docs["temperature_readings"] if r["batch_id"] == "BATCH-2024-0001"]
    summary = temperature_summary(readings)
    assert summary["count"] == 24
    assert summary["outOfRangeCount"] == sum(1 for r in readings if not 2.0 <= r["value"] <= 8.0)
