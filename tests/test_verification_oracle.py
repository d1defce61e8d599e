"""
Tests for public verification and the best-effort ledger history read.
"""

import pytest

from app.errors import NotFoundError
from app.services import build_services

from conftest import bridge_client


async def issue_domestic(services, actors, approve, batch_id="B1"):
    await approve(services, batch_id, actors, upto=2)
    result = await services.certificates.issue(batch_id, "DOMESTIC", "SENASICA", 90, "certifier-1")
    return result["certificate"]["certificate_id"]


async def test_verify_certificate_reports_ledger_evidence(services, actors, approve):
    cert_id = await issue_domestic(services, actors, approve)
    result = await services.oracle.verify_certificate(cert_id)
    assert result["certificateId"] == cert_id
    assert result["isValid"] is True
    assert result["isExpired"] is False
    assert result["anchoredOnLedger"] is True


async def test_ledger_outage_does_not_change_verdict(services, ledger, actors, approve):
    cert_id = await issue_domestic(services, actors, approve)
    ledger.history_fails = True
    result = await services.oracle.verify_certificate(cert_id)
    assert result["isValid"] is True
    # Nothing cached yet and the ledger is down: unknown.
    assert result["anchoredOnLedger"] is None


async def test_history_falls_back_to_last_good_read(services, ledger, actors, approve):
    await issue_domestic(services, actors, approve)
    first = await services.oracle.get_batch_history("B1")
    assert len(first) == 1

    ledger.history_fails = True
    assert await services.oracle.get_batch_history("B1") == first
    assert await services.oracle.get_batch_history("B2") == []


async def test_tampered_certificate_is_invalid_even_if_anchored(services, store, actors, approve):
    cert_id = await issue_domestic(services, actors, approve)
    store.certificates[cert_id]["payload_snapshot"] += " "
    result = await services.oracle.verify_certificate(cert_id)
    assert result["isValid"] is False
    assert result["anchoredOnLedger"] is True


async def test_unknown_certificate(services):
    result = await services.oracle.verify_certificate("CERT-NOPE")
    assert result["isValid"] is False
    assert result["anchoredOnLedger"] is None


async def test_no_ledger_means_unknown(store, actors, approve):
    services = build_services(store)
    cert_id = await issue_domestic(services, actors, approve)
    result = await services.oracle.verify_certificate(cert_id)
    assert result["isValid"] is True
    assert result["anchoredOnLedger"] is None


class TestVerifyFinalization:
    async def test_intact_record(self, services, actors, approve):
        await approve(services, "B1", actors)
        finalized = await services.finalization.finalize("B1")
        result = await services.oracle.verify_finalization("B1")
        assert result["isValid"] is True
        assert result["computedHash"] == result["storedHash"] == finalized["hash"]
        assert result["txId"] == finalized["txId"]
        assert result["anchoredOnLedger"] is True

    async def test_edited_snapshot(self, services, store, actors, approve):
        await approve(services, "B1", actors)
        await services.finalization.finalize("B1")
        record = store.finalizations["B1"]
        record["payload_snapshot"] = record["payload_snapshot"].replace("APPROVED", "REJECTED", 1)
        result = await services.oracle.verify_finalization("B1")
        assert result["isValid"] is False

    async def test_not_finalized(self, services):
        with pytest.raises(NotFoundError):
            await services.oracle.verify_finalization("B1")


MALFORMED_HISTORY = {
    "body as list": [1, 2],
    "events as mapping": {"events": {"0xe1": {}}},
    "non-numeric timestamp": {"events": [{"eventId": "0xe1", "timestamp": "yesterday"}]},
    "bad coordinates": {"events": [{"eventId": "0xe1", "location": {"latitude": "north"}}]},
}


@pytest.mark.parametrize("case", sorted(MALFORMED_HISTORY))
async def test_malformed_history_degrades_to_empty(store, case):
    client = bridge_client({("GET", "/batches/B1/events"): (200, MALFORMED_HISTORY[case])})
    services = build_services(store, client)

    assert await services.oracle.get_batch_history("B1") == []
    await client.aclose()


async def test_malformed_history_serves_cached_read(store, actors, approve):
    good = {"events": [{"eventId": "0xe1", "eventType": "CERTIFICATE_ISSUED", "timestamp": 1700000000}]}
    routes = {("GET", "/batches/B1/events"): (200, good)}
    client = bridge_client(routes)
    services = build_services(store, client)

    first = await services.oracle.get_batch_history("B1")
    assert [e["eventId"] for e in first] == ["0xe1"]

    routes_after = {("GET", "/batches/B1/events"): (200, [1, 2])}
    services.oracle.ledger = bridge_client(routes_after)
    assert await services.oracle.get_batch_history("B1") == first
    await client.aclose()
    await services.oracle.ledger.aclose()


async def test_malformed_history_does_not_break_certificate_check(store, actors, approve):
    client = bridge_client({("GET", "/batches/B1/events"): (200, [1, 2])})
    services = build_services(store, client)
    cert_id = await issue_domestic(services, actors, approve)

    result = await services.oracle.verify_certificate(cert_id)
    assert result["isValid"] is True
    assert result["anchoredOnLedger"] is None
    await client.aclose()
