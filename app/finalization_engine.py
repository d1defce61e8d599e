# backend/app/finalization_engine.py
"""Freezes a fully approved stage timeline into a hashed, write-once record.

The record is created with an insert-if-absent keyed on batch_id before any
ledger traffic happens, so concurrent finalize() calls (from any number of
processes) yield exactly one record and the losers get a ConflictError
without touching the ledger. The winner anchors best-effort afterwards.
"""
import logging
from datetime import datetime, timezone

from app.anchoring import FINALIZATION_EVENT, advisory_anchor, origin_coordinates
from app.canonical import canonical_json, content_hash
from app.database import finalization_helper
from app.errors import ConflictError, NotFoundError
from app.models.domain import STAGE_ORDER, StageStatus
from app.stage_ledger import timeline_entry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"


class FinalizationEngine:
    def __init__(self, store, stage_ledger, ledger=None):
        self.store = store
        self.stage_ledger = stage_ledger
        self.ledger = ledger

    async def is_ready_for_finalization(self, batch_id: str) -> bool:
        return await self.stage_ledger.are_all_stages_approved(batch_id)

    def build_payload(self, batch_id: str, stages, finalized_at: datetime) -> dict:
        return {
            "batchId": batch_id,
            "schemaVersion": SCHEMA_VERSION,
            "finalizedAt": finalized_at,
            "stages": [timeline_entry(s) for s in stages],
        }

    async def finalize(self, batch_id: str) -> dict:
        if await self.store.get_finalization(batch_id):
            raise ConflictError(
                f"Batch {batch_id} is already finalized",
                code="ALREADY_FINALIZED",
                details={"batchId": batch_id},
            )

        stages = await self.store.list_stages(batch_id)
        approved = {s["stage_type"] for s in stages if s["status"] == StageStatus.APPROVED.value}
        missing = [t.value for t in STAGE_ORDER if t.value not in approved]
        if missing or len(stages) != len(STAGE_ORDER):
            raise ConflictError(
                f"Batch {batch_id} is not ready for finalization",
                code="NOT_READY",
                details={"batchId": batch_id, "missingStages": missing},
            )

        finalized_at = datetime.now(timezone.utc)
        snapshot = canonical_json(self.build_payload(batch_id, stages, finalized_at))
        digest = content_hash(snapshot)

        record = {
            "batch_id": batch_id,
            "content_hash": digest,
            "payload_snapshot": snapshot.decode("utf-8"),
            "schema_version": SCHEMA_VERSION,
            "anchor_tx_id": None,
            "anchor_event_id": None,
            "anchored_at": None,
            "finalized_at": finalized_at,
        }
        if not await self.store.create_finalization_if_absent(record):
            raise ConflictError(
                f"Batch {batch_id} is already finalized",
                code="ALREADY_FINALIZED",
                details={"batchId": batch_id},
            )
        logger.info("Batch finalized batch=%s hash=%s", batch_id, digest)

        lat, lng = origin_coordinates(await self.store.get_batch(batch_id), stages)
        result = await advisory_anchor(self.ledger, FINALIZATION_EVENT, batch_id, lat, lng, digest)
        if result is not None and await self.store.set_finalization_anchor(batch_id, result.tx_id, result.event_id):
            record.update(anchor_tx_id=result.tx_id, anchor_event_id=result.event_id)
            logger.info("Finalization anchored batch=%s tx=%s", batch_id, result.tx_id)

        return {
            "batchId": batch_id,
            "hash": digest,
            "txId": record["anchor_tx_id"],
            "finalizedAt": finalization_helper(record)["finalizedAt"],
        }

    async def get_finalization(self, batch_id: str) -> dict:
        record = await self.store.get_finalization(batch_id)
        if not record:
            raise NotFoundError(f"Batch {batch_id} has not been finalized", details={"batchId": batch_id})
        return record
