# backend/app/services.py
import logging
from dataclasses import dataclass
from typing import Optional

from app import config
from app.anchoring import AnchorReconciler
from app.blockchain_client import LedgerAnchorClient
from app.certificate_issuer import CertificateIssuer
from app.finalization_engine import FinalizationEngine
from app.stage_ledger import StageLedger
from app.verification_oracle import VerificationOracle

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: object
    ledger: Optional[LedgerAnchorClient]
    stages: StageLedger
    finalization: FinalizationEngine
    certificates: CertificateIssuer
    oracle: VerificationOracle
    reconciler: AnchorReconciler


def build_services(store, ledger: Optional[LedgerAnchorClient] = None) -> Services:
    stages = StageLedger(store)
    certificates = CertificateIssuer(store, ledger)
    return Services(
        store=store,
        ledger=ledger,
        stages=stages,
        finalization=FinalizationEngine(store, stages, ledger),
        certificates=certificates,
        oracle=VerificationOracle(store, certificates, ledger),
        reconciler=AnchorReconciler(store, ledger),
    )


def _default_store():
    if config.STORE_BACKEND == "memory":
        from app.memory_store import MemoryStore
        logger.warning("Using in-memory store; records will not survive a restart")
        return MemoryStore()
    from app.database import MongoStore, connect
    return MongoStore(connect())


def _default_ledger() -> Optional[LedgerAnchorClient]:
    if not config.LEDGER_BRIDGE_URL:
        logger.warning("LEDGER_BRIDGE_URL not set; records will be created without ledger anchors")
        return None
    return LedgerAnchorClient()


_services: Optional[Services] = None


def get_services() -> Services:
    """FastAPI dependency. Built once per process; override in tests via dependency_overrides."""
    global _services
    if _services is None:
        _services = build_services(_default_store(), _default_ledger())
    return _services


async def shutdown_services():
    global _services
    if _services is not None and _services.ledger is not None:
        await _services.ledger.aclose()
    _services = None
