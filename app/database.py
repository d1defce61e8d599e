import logging
from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.canonical import to_iso
from app.config import MONGO_DB_NAME, MONGO_URI

logger = logging.getLogger(__name__)

# ==============================
# MongoDB Connection
# ==============================


def connect(uri: str = MONGO_URI, db_name: str = MONGO_DB_NAME) -> AsyncIOMotorDatabase:
    client = AsyncIOMotorClient(uri, tz_aware=True)
    return client[db_name]


NO_ID = {"_id": 0}


class MongoStore:
    """Durable store for stages, finalizations and certificates.

    Conditional creates lean on the unique indexes created by `ensure_indexes`:
    a DuplicateKeyError means another writer got there first, so the create
    reports False instead of raising.
    """

    def __init__(self, database: AsyncIOMotorDatabase):
        self.db = database
        self.stages_col = database["verification_stages"]
        self.finalizations_col = database["finalizations"]
        self.certificates_col = database["certificates"]
        self.batches_col = database["batches"]
        self.seals_col = database["nfc_seals"]
        self.temperature_col = database["temperature_readings"]

    async def ensure_indexes(self):
        await self.stages_col.create_index(
            [("batch_id", ASCENDING), ("stage_type", ASCENDING)], unique=True
        )
        await self.stages_col.create_index("stage_id", unique=True)
        await self.finalizations_col.create_index("batch_id", unique=True)
        await self.certificates_col.create_index("certificate_id", unique=True)
        await self.certificates_col.create_index("batch_id")
        logger.info("MongoDB indexes ensured on %s", self.db.name)

    # ---------- stages ----------

    async def create_stage_if_absent(self, doc: dict) -> bool:
        try:
            await self.stages_col.insert_one(dict(doc))
            return True
        except DuplicateKeyError:
            return False

    async def get_stage(self, stage_id: str) -> Optional[dict]:
        return await self.stages_col.find_one({"stage_id": stage_id}, NO_ID)

    async def get_stage_by_type(self, batch_id: str, stage_type: str) -> Optional[dict]:
        return await self.stages_col.find_one({"batch_id": batch_id, "stage_type": stage_type}, NO_ID)

    async def list_stages(self, batch_id: str) -> List[dict]:
        cursor = self.stages_col.find({"batch_id": batch_id}, NO_ID).sort("stage_index", ASCENDING)
        return [s async for s in cursor]

    async def update_stage_status(self, stage_id: str, expected_status: str, fields: dict) -> Optional[dict]:
        # Compare-and-set: only applies while the stage still has the status the caller validated.
        return await self.stages_col.find_one_and_update(
            {"stage_id": stage_id, "status": expected_status},
            {"$set": fields},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    # ---------- finalizations ----------

    async def create_finalization_if_absent(self, doc: dict) -> bool:
        try:
            await self.finalizations_col.insert_one(dict(doc))
            return True
        except DuplicateKeyError:
            return False

    async def get_finalization(self, batch_id: str) -> Optional[dict]:
        return await self.finalizations_col.find_one({"batch_id": batch_id}, NO_ID)

    async def set_finalization_anchor(self, batch_id: str, tx_id: Optional[str], event_id: Optional[str]) -> bool:
        result = await self.finalizations_col.update_one(
            {"batch_id": batch_id, "anchored_at": None},
            {"$set": _anchor_fields(tx_id, event_id)},
        )
        return result.modified_count == 1

    async def list_unanchored_finalizations(self, limit: int = 50, created_before: Optional[datetime] = None) -> List[dict]:
        cursor = self.finalizations_col.find(_unanchored("finalized_at", created_before), NO_ID).sort("finalized_at", ASCENDING).limit(limit)
        return [f async for f in cursor]

    # ---------- certificates ----------

    async def insert_certificate(self, doc: dict):
        await self.certificates_col.insert_one(dict(doc))

    async def get_certificate(self, certificate_id: str) -> Optional[dict]:
        return await self.certificates_col.find_one({"certificate_id": certificate_id}, NO_ID)

    async def list_certificates(self, batch_id: str) -> List[dict]:
        cursor = self.certificates_col.find({"batch_id": batch_id}, NO_ID).sort("issued_at", -1)
        return [c async for c in cursor]

    async def set_certificate_anchor(self, certificate_id: str, tx_id: Optional[str], event_id: Optional[str]) -> bool:
        result = await self.certificates_col.update_one(
            {"certificate_id": certificate_id, "anchored_at": None},
            {"$set": _anchor_fields(tx_id, event_id)},
        )
        return result.modified_count == 1

    async def list_unanchored_certificates(self, limit: int = 50, created_before: Optional[datetime] = None) -> List[dict]:
        cursor = self.certificates_col.find(_unanchored("issued_at", created_before), NO_ID).sort("issued_at", ASCENDING).limit(limit)
        return [c async for c in cursor]

    # ---------- adjacent collections (read-only here) ----------

    async def get_batch(self, batch_id: str) -> Optional[dict]:
        return await self.batches_col.find_one({"batch_id": batch_id}, NO_ID)

    async def list_seals(self, batch_id: str) -> List[dict]:
        return [s async for s in self.seals_col.find({"batch_id": batch_id}, NO_ID)]

    async def list_temperature_readings(self, batch_id: str) -> List[dict]:
        return [t async for t in self.temperature_col.find({"batch_id": batch_id}, NO_ID)]


def _unanchored(created_field: str, created_before: Optional[datetime]) -> dict:
    query = {"anchored_at": None}
    if created_before is not None:
        query[created_field] = {"$lte": created_before}
    return query


def _anchor_fields(tx_id: Optional[str], event_id: Optional[str]) -> dict:
    return {
        "anchor_tx_id": tx_id,
        "anchor_event_id": event_id,
        "anchored_at": datetime.now(timezone.utc),
    }


# ==============================
# Helpers (documents -> API views)
# ==============================

def _iso(value) -> Optional[str]:
    return to_iso(value) if isinstance(value, datetime) else value


def stage_helper(stage: dict) -> dict:
    return {
        "id": stage.get("stage_id"),
        "batchId": stage.get("batch_id"),
        "stageType": stage.get("stage_type"),
        "status": stage.get("status"),
        "actorId": stage.get("actor_id"),
        "timestamp": _iso(stage.get("timestamp")),
        "location": stage.get("location"),
        "latitude": stage.get("latitude"),
        "longitude": stage.get("longitude"),
        "notes": stage.get("notes"),
        "evidenceUrl": stage.get("evidence_url"),
        "reviewedBy": stage.get("reviewed_by"),
        "updatedAt": _iso(stage.get("updated_at")),
    }


def finalization_helper(record: dict) -> dict:
    return {
        "batchId": record.get("batch_id"),
        "hash": record.get("content_hash"),
        "txId": record.get("anchor_tx_id"),
        "eventId": record.get("anchor_event_id"),
        "finalizedAt": _iso(record.get("finalized_at")),
        "anchoredAt": _iso(record.get("anchored_at")),
    }


def certificate_helper(cert: dict) -> dict:
    return {
        "id": cert.get("certificate_id"),
        "batchId": cert.get("batch_id"),
        "grade": cert.get("grade"),
        "certifyingBody": cert.get("certifying_body"),
        "hash": cert.get("content_hash"),
        "txId": cert.get("anchor_tx_id"),
        "eventId": cert.get("anchor_event_id"),
        "validFrom": _iso(cert.get("valid_from")),
        "validTo": _iso(cert.get("valid_to")),
        "issuedBy": cert.get("issued_by"),
        "issuedAt": _iso(cert.get("issued_at")),
    }
