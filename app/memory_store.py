# backend/app/memory_store.py
import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple


class MemoryStore:
    """In-process store with the same coroutine interface as MongoStore.

    Used for local runs (STORE_BACKEND=memory) and the test-suite. Each method
    does its check-and-write without awaiting in between, so on one event loop
    the conditional creates behave like the unique indexes they stand for.
    """

    def __init__(self):
        self.stages: Dict[str, dict] = {}
        self._stage_keys: Dict[Tuple[str, str], str] = {}
        self.finalizations: Dict[str, dict] = {}
        self.certificates: Dict[str, dict] = {}
        self.batches: Dict[str, dict] = {}
        self.seals: List[dict] = []
        self.temperature_readings: List[dict] = []

    async def ensure_indexes(self):
        return None

    # ---------- seeding (adjacent data owned by other services) ----------

    def add_batch(self, batch: dict):
        self.batches[batch["batch_id"]] = copy.deepcopy(batch)

    def add_seal(self, seal: dict):
        self.seals.append(copy.deepcopy(seal))

    def add_temperature_reading(self, reading: dict):
        self.temperature_readings.append(copy.deepcopy(reading))

    # ---------- stages ----------

    async def create_stage_if_absent(self, doc: dict) -> bool:
        key = (doc["batch_id"], doc["stage_type"])
        if key in self._stage_keys or doc["stage_id"] in self.stages:
            return False
        self.stages[doc["stage_id"]] = copy.deepcopy(doc)
        self._stage_keys[key] = doc["stage_id"]
        return True

    async def get_stage(self, stage_id: str) -> Optional[dict]:
        return copy.deepcopy(self.stages.get(stage_id))

    async def get_stage_by_type(self, batch_id: str, stage_type: str) -> Optional[dict]:
        stage_id = self._stage_keys.get((batch_id, stage_type))
        return copy.deepcopy(self.stages[stage_id]) if stage_id else None

    async def list_stages(self, batch_id: str) -> List[dict]:
        found = [s for s in self.stages.values() if s["batch_id"] == batch_id]
        return copy.deepcopy(sorted(found, key=lambda s: s["stage_index"]))

    async def update_stage_status(self, stage_id: str, expected_status: str, fields: dict) -> Optional[dict]:
        stage = self.stages.get(stage_id)
        if stage is None or stage["status"] != expected_status:
            return None
        stage.update(copy.deepcopy(fields))
        return copy.deepcopy(stage)

    # ---------- finalizations ----------

    async def create_finalization_if_absent(self, doc: dict) -> bool:
        if doc["batch_id"] in self.finalizations:
            return False
        self.finalizations[doc["batch_id"]] = copy.deepcopy(doc)
        return True

    async def get_finalization(self, batch_id: str) -> Optional[dict]:
        return copy.deepcopy(self.finalizations.get(batch_id))

    async def set_finalization_anchor(self, batch_id: str, tx_id: Optional[str], event_id: Optional[str]) -> bool:
        return _set_anchor(self.finalizations.get(batch_id), tx_id, event_id)

    async def list_unanchored_finalizations(self, limit: int = 50, created_before: Optional[datetime] = None) -> List[dict]:
        pending = [
            f for f in self.finalizations.values()
            if f.get("anchored_at") is None and (created_before is None or f["finalized_at"] <= created_before)
        ]
        pending.sort(key=lambda f: f["finalized_at"])
        return copy.deepcopy(pending[:limit])

    # ---------- certificates ----------

    async def insert_certificate(self, doc: dict):
        if doc["certificate_id"] in self.certificates:
            raise KeyError(f"duplicate certificate_id {doc['certificate_id']}")
        self.certificates[doc["certificate_id"]] = copy.deepcopy(doc)

    async def get_certificate(self, certificate_id: str) -> Optional[dict]:
        return copy.deepcopy(self.certificates.get(certificate_id))

    async def list_certificates(self, batch_id: str) -> List[dict]:
        found = [c for c in self.certificates.values() if c["batch_id"] == batch_id]
        found.sort(key=lambda c: c["issued_at"], reverse=True)
        return copy.deepcopy(found)

    async def set_certificate_anchor(self, certificate_id: str, tx_id: Optional[str], event_id: Optional[str]) -> bool:
        return _set_anchor(self.certificates.get(certificate_id), tx_id, event_id)

    async def list_unanchored_certificates(self, limit: int = 50, created_before: Optional[datetime] = None) -> List[dict]:
        pending = [
            c for c in self.certificates.values()
            if c.get("anchored_at") is None and (created_before is None or c["issued_at"] <= created_before)
        ]
        pending.sort(key=lambda c: c["issued_at"])
        return copy.deepcopy(pending[:limit])

    # ---------- adjacent collections ----------

    async def get_batch(self, batch_id: str) -> Optional[dict]:
        return copy.deepcopy(self.batches.get(batch_id))

    async def list_seals(self, batch_id: str) -> List[dict]:
        return copy.deepcopy([s for s in self.seals if s.get("batch_id") == batch_id])

    async def list_temperature_readings(self, batch_id: str) -> List[dict]:
        return copy.deepcopy([t for t in self.temperature_readings if t.get("batch_id") == batch_id])


def _set_anchor(record: Optional[dict], tx_id: Optional[str], event_id: Optional[str]) -> bool:
    if record is None or record.get("anchored_at") is not None:
        return False
    record.update({
        "anchor_tx_id": tx_id,
        "anchor_event_id": event_id,
        "anchored_at": datetime.now(timezone.utc),
    })
    return True
