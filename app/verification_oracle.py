# backend/app/verification_oracle.py
"""On-demand verification for public and audit callers.

The stored content hash decides pass/fail. Ledger history is only supporting
evidence: when the ledger is missing or unreachable the answer degrades to
"unknown" (None) instead of failing the check.
"""
import logging
from typing import Dict, List, Optional

from app.anchoring import CERTIFICATE_EVENT, FINALIZATION_EVENT
from app.canonical import content_hash
from app.errors import LedgerError, NotFoundError

logger = logging.getLogger(__name__)


class VerificationOracle:
    def __init__(self, store, certificate_issuer, ledger=None):
        self.store = store
        self.certificate_issuer = certificate_issuer
        self.ledger = ledger
        # Last good ledger read per batch, served when the ledger is unreachable.
        self._history_cache: Dict[str, List[dict]] = {}

    async def get_batch_history(self, batch_id: str) -> List[dict]:
        if self.ledger is None:
            return list(self._history_cache.get(batch_id, []))
        try:
            history = await self.ledger.get_batch_history(batch_id)
        except LedgerError as e:
            logger.warning("Ledger history read failed batch=%s code=%s; serving cached result", batch_id, e.code)
            return list(self._history_cache.get(batch_id, []))
        self._history_cache[batch_id] = list(history)
        return history

    async def _anchored_on_ledger(self, batch_id: str, event_type: str, digest: Optional[str]) -> Optional[bool]:
        if not digest:
            return None
        history = await self.get_batch_history(batch_id)
        if not history:
            # Empty can mean "never anchored" or "ledger unavailable"; don't claim either.
            return None
        return any(e.get("contentHash") == digest and e.get("eventType") == event_type for e in history)

    async def verify_certificate(self, certificate_id: str) -> dict:
        result = await self.certificate_issuer.verify(certificate_id)
        certificate = result.get("certificate")
        anchored = None
        if certificate:
            anchored = await self._anchored_on_ledger(
                certificate["batch_id"], CERTIFICATE_EVENT, result["storedHash"]
            )
        return {
            "certificateId": certificate_id,
            "isValid": result["isValid"],
            "isExpired": result["isExpired"],
            "computedHash": result["computedHash"],
            "storedHash": result["storedHash"],
            "anchoredOnLedger": anchored,
        }

    async def verify_finalization(self, batch_id: str) -> dict:
        record = await self.store.get_finalization(batch_id)
        if not record:
            raise NotFoundError(f"Batch {batch_id} has not been finalized", details={"batchId": batch_id})

        stored = record.get("content_hash")
        snapshot = record.get("payload_snapshot")
        computed = content_hash(snapshot) if isinstance(snapshot, str) and snapshot else None

        return {
            "batchId": batch_id,
            "isValid": computed is not None and computed == stored,
            "computedHash": computed,
            "storedHash": stored,
            "txId": record.get("anchor_tx_id"),
            "anchoredOnLedger": await self._anchored_on_ledger(batch_id, FINALIZATION_EVENT, stored),
        }
