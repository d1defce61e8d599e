# backend/app/anchoring.py
"""Advisory anchoring: the content hash is authoritative, the ledger write is not.

Callers that create hash-authoritative records (finalizations, certificates)
go through `advisory_anchor`, which never raises for ledger trouble. Records
left without an anchor are picked up later by `AnchorReconciler`.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.config import ANCHOR_TIMEOUT
from app.errors import LedgerError
from app.models.domain import AnchorResult

logger = logging.getLogger(__name__)

FINALIZATION_EVENT = "STAGES_FINALIZED"
CERTIFICATE_EVENT = "CERTIFICATE_ISSUED"


async def advisory_anchor(
    ledger,
    event_type: str,
    batch_id: str,
    latitude: Optional[float],
    longitude: Optional[float],
    content_hash: str,
    timeout: float = ANCHOR_TIMEOUT,
) -> Optional[AnchorResult]:
    """Best-effort anchor. Returns None when no ledger is configured or anchoring failed."""
    if ledger is None:
        logger.info("No ledger configured; %s for batch %s left unanchored", event_type, batch_id)
        return None
    try:
        return await asyncio.wait_for(
            ledger.anchor(event_type, batch_id, latitude, longitude, content_hash),
            timeout=timeout,
        )
    except LedgerError as e:
        logger.warning(
            "Ledger anchoring failed for %s batch=%s code=%s retryable=%s; anchor pending: %s",
            event_type, batch_id, e.code, e.retryable, e.message,
        )
    except asyncio.TimeoutError:
        logger.warning("Ledger anchoring for %s batch=%s exceeded %.1fs; anchor pending",
                       event_type, batch_id, timeout)
    return None


def origin_coordinates(batch: Optional[dict], stages) -> tuple:
    """Best available (lat, lng) for a batch: its recorded origin, else the first stage with coordinates."""
    if batch and batch.get("latitude") is not None and batch.get("longitude") is not None:
        return float(batch["latitude"]), float(batch["longitude"])
    for stage in stages:
        if stage.get("latitude") is not None and stage.get("longitude") is not None:
            return float(stage["latitude"]), float(stage["longitude"])
    return 0.0, 0.0


class AnchorReconciler:
    """Fills in missing anchor references for records whose first anchoring attempt failed.

    Records younger than `min_age` seconds are left alone: their first attempt
    may still be running, and it is bounded by ANCHOR_TIMEOUT.
    """

    def __init__(self, store, ledger, min_age: float = ANCHOR_TIMEOUT):
        self.store = store
        self.ledger = ledger
        self.min_age = min_age

    async def reconcile(self, limit: int = 50) -> dict:
        summary = {"anchored": 0, "failed": 0, "skipped": 0}
        if self.ledger is None:
            logger.info("Anchor reconciliation skipped: no ledger configured")
            return summary

        created_before = datetime.now(timezone.utc) - timedelta(seconds=self.min_age)

        for record in await self.store.list_unanchored_finalizations(limit, created_before):
            stages = await self.store.list_stages(record["batch_id"])
            lat, lng = origin_coordinates(await self.store.get_batch(record["batch_id"]), stages)
            result = await self._anchor(FINALIZATION_EVENT, record["batch_id"], lat, lng, record["content_hash"])
            if result is None:
                summary["failed"] += 1
            elif await self.store.set_finalization_anchor(record["batch_id"], result.tx_id, result.event_id):
                summary["anchored"] += 1
            else:
                summary["skipped"] += 1

        for cert in await self.store.list_unanchored_certificates(limit, created_before):
            stages = await self.store.list_stages(cert["batch_id"])
            lat, lng = origin_coordinates(await self.store.get_batch(cert["batch_id"]), stages)
            result = await self._anchor(CERTIFICATE_EVENT, cert["batch_id"], lat, lng, cert["content_hash"])
            if result is None:
                summary["failed"] += 1
            elif await self.store.set_certificate_anchor(cert["certificate_id"], result.tx_id, result.event_id):
                summary["anchored"] += 1
            else:
                summary["skipped"] += 1

        logger.info("Anchor reconciliation finished %s", summary)
        return summary

    async def _anchor(self, event_type, batch_id, lat, lng, content_hash) -> Optional[AnchorResult]:
        # One submission in flight per hash.
        return await advisory_anchor(self.ledger, event_type, batch_id, lat, lng, content_hash)
