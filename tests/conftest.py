"""
Pytest configuration and fixtures for the traceability test suite.
"""

import httpx
import pytest

from app.blockchain_client import LedgerAnchorClient
from app.errors import LedgerError
from app.memory_store import MemoryStore
from app.models.domain import STAGE_ORDER, Actor, AnchorResult, Role
from app.services import build_services


# ============================================================================
# Actors
# ============================================================================

@pytest.fixture
def actors():
    """One actor per role."""
    return {role: Actor(id=f"{role.value.lower()}-1", role=role) for role in Role}


# Creator / approver for each stage that sits inside the permission table.
STAGE_CREATOR = {
    "HARVEST": Role.PRODUCER,
    "PACKING": Role.PRODUCER,
    "COLD_CHAIN": Role.DRIVER,
    "EXPORT": Role.EXPORTER,
    "DELIVERY": Role.DRIVER,
}
STAGE_APPROVER = {
    "HARVEST": Role.QA,
    "PACKING": Role.QA,
    "COLD_CHAIN": Role.QA,
    "EXPORT": Role.CERTIFIER,
    "DELIVERY": Role.CERTIFIER,
}


# ============================================================================
# Ledger double
# ============================================================================

class FakeLedger:
    """Stands in for LedgerAnchorClient at the two-method seam (anchor + history)."""

    def __init__(self, fail=False, history_fails=False):
        self.fail = fail
        self.history_fails = history_fails
        self.anchored = []
        self.history = {}

    async def anchor(self, event_type, batch_id, latitude, longitude, content_hash):
        self.anchored.append((event_type, batch_id, content_hash))
        if self.fail:
            raise LedgerError("Anchoring failed after 3 attempts", retryable=True, code="RETRIES_EXHAUSTED")
        tx_id = f"0xTX{len(self.anchored):04d}"
        self.history.setdefault(batch_id, []).append({
            "eventId": f"0xEV{len(self.anchored):04d}",
            "eventType": event_type,
            "batchId": batch_id,
            "contentHash": content_hash,
        })
        return AnchorResult(tx_id=tx_id, event_id=f"0xEV{len(self.anchored):04d}", resource_used=21000)

    async def get_batch_history(self, batch_id):
        if self.history_fails:
            raise LedgerError("Ledger bridge unreachable", retryable=True, code="NETWORK_ERROR")
        return list(self.history.get(batch_id, []))


# ============================================================================
# Ledger bridge over MockTransport (real LedgerAnchorClient)
# ============================================================================

CONFIRMED_RECEIPT = {
    "status": "confirmed",
    "confirmations": 1,
    "gasUsed": 84000,
    "logs": [{"name": "EventRegistered", "args": {"eventId": "0xevent1"}}],
}


def bridge_client(routes=None, calls=None, max_attempts=3):
    """LedgerAnchorClient against a scripted bridge.

    `routes` maps (method, path) to (status, json body); anything unlisted gets
    a well-formed answer. Every request is appended to `calls` when given.
    """
    answers = {
        ("POST", "/events/estimate"): (200, {"gas": 21000}),
        ("GET", "/network/fees"): (200, {"maxFeePerGas": "30000000000", "maxPriorityFeePerGas": "1500000000"}),
        ("POST", "/events"): (200, {"txHash": "0xabc"}),
        ("GET", "/transactions/0xabc"): (200, CONFIRMED_RECEIPT),
        ("GET", "/health"): (200, {"blockNumber": 1}),
    }
    answers.update(routes or {})

    def handler(request):
        key = (request.method, request.url.path)
        if calls is not None:
            calls.append(key)
        if key not in answers:
            return httpx.Response(200, json={"events": []})
        status, body = answers[key]
        return httpx.Response(status, json=body)

    async def no_sleep(delay):
        return None

    return LedgerAnchorClient(
        base_url="http://bridge.test",
        transport=httpx.MockTransport(handler),
        max_attempts=max_attempts,
        base_delay=0.01,
        sleep=no_sleep,
    )


# Well-formed JSON that doesn't have the shape the bridge documents.
MALFORMED_ANCHOR_ROUTES = {
    "estimate without gas": {("POST", "/events/estimate"): (200, {})},
    "estimate as list": {("POST", "/events/estimate"): (200, [1, 2])},
    "non-numeric gas": {("POST", "/events/estimate"): (200, {"gas": "lots"})},
    "fees as list": {("GET", "/network/fees"): (200, ["fee"])},
    "null confirmations": {("GET", "/transactions/0xabc"): (200, {**CONFIRMED_RECEIPT, "confirmations": None})},
    "logs as string": {("GET", "/transactions/0xabc"): (200, {**CONFIRMED_RECEIPT, "logs": "EventRegistered"})},
    "non-numeric gas used": {("GET", "/transactions/0xabc"): (200, {**CONFIRMED_RECEIPT, "gasUsed": "n/a"})},
}


# ============================================================================
# Store / services
# ============================================================================

@pytest.fixture
def store():
    store = MemoryStore()
    for batch_id in ("B1", "B2", "B3"):
        store.add_batch({
            "batch_id": batch_id,
            "producer_id": "producer-1",
            "variety": "Hass",
            "weight_kg": 1200.5,
            "origin": "Uruapan, Michoacan",
            "latitude": 19.4167,
            "longitude": -102.0667,
        })
    return store


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def services(store, ledger):
    return build_services(store, ledger)


async def approve_through(services, batch_id, actors, upto=len(STAGE_ORDER)):
    """Create and approve stages in canonical order with correctly permissioned actors."""
    for stage_type in STAGE_ORDER[:upto]:
        creator = actors[STAGE_CREATOR[stage_type.value]]
        approver = actors[STAGE_APPROVER[stage_type.value]]
        await services.stages.create_next_stage(batch_id, creator, location=f"{stage_type.value} site",
                                                latitude=19.4, longitude=-102.0)
        await services.stages.approve_stage(batch_id, stage_type, approver)


@pytest.fixture
def approve():
    return approve_through
