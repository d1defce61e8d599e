# db_seeding.py
"""Seed the adjacent collections (batches, NFC seals, temperature readings) for local runs.

Stages, finalizations and certificates are never seeded: they are created
through the API so the permission table and hashing apply.
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone

from app.database import connect

ORIGINS = [
    ("Uruapan, Michoacan", 19.4167, -102.0667),
    ("Tancitaro, Michoacan", 19.3372, -102.3636),
    ("Ario de Rosales, Michoacan", 19.2094, -101.7083),
    ("Salvador Escalante, Michoacan", 19.4014, -101.6428),
]
VARIETIES = ["Hass", "Mendez", "Fuerte", "Criollo"]


def build_seed_documents(batch_count: int = 10, rng: random.Random = None, now: datetime = None) -> dict:
    """Rich demo data; pass a seeded Random for reproducible output."""
    rng = rng or random.Random()
    now = now or datetime.now(timezone.utc)

    batches, seals, readings = [], [], []
    for i in range(1, batch_count + 1):
        batch_id = f"BATCH-{now.year}-{i:04d}"
        origin, lat, lng = rng.choice(ORIGINS)
        harvest_date = now - timedelta(days=rng.randint(1, 14))

        batches.append({
            "batch_id": batch_id,
            "producer_id": f"producer-{rng.randint(1, 5)}",
            "crop_type": "Avocado",
            "variety": rng.choice(VARIETIES),
            "weight_kg": round(rng.uniform(500, 5000), 1),
            "harvest_date": harvest_date.date().isoformat(),
            "origin": origin,
            "latitude": lat,
            "longitude": lng,
            "created_at": now,
        })

        for s in range(rng.randint(1, 3)):
            seals.append({
                "batch_id": batch_id,
                "seal_number": f"NFC-{i:04d}-{s + 1:02d}",
                "status": "ACTIVE",
                "last_verified_at": now - timedelta(hours=rng.randint(1, 48)),
            })

        for h in range(24):
            value = round(rng.gauss(5.0, 1.5), 2)
            readings.append({
                "batch_id": batch_id,
                "value": value,
                "unit": "C",
                "is_out_of_range": not 2.0 <= value <= 8.0,
                "recorded_at": harvest_date + timedelta(hours=h),
            })

    return {"batches": batches, "nfc_seals": seals, "temperature_readings": readings}


async def repopulate_database(batch_count: int = 10):
    """Clear and repopulate the adjacent collections."""
    db = connect()
    print(f"Connecting to MongoDB ({db.name})...")
    await db.client.admin.command("ping")

    documents = build_seed_documents(batch_count)
    for name, docs in documents.items():
        await db[name].delete_many({})
        result = await db[name].insert_many(docs)
        print(f"   {name}: inserted {len(result.inserted_ids)}")

    sample = await db["batches"].find_one({}, {"_id": 0, "batch_id": 1, "origin": 1})
    if sample:
        print(f"Sample batch: {sample['batch_id']} from {sample['origin']}")

    db.client.close()
    print("Database repopulation complete.")


if __name__ == "__main__":
    asyncio.run(repopulate_database())
