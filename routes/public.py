# backend/routes/public.py

from fastapi import APIRouter, Depends

from app.models.public import BatchHistory, CertificateVerification
from app.services import Services, get_services

router = APIRouter(prefix="/api/public", tags=["public"])


@router.get("/certificates/{certificate_id}/verify", response_model=CertificateVerification)
async def verify_certificate(certificate_id: str, services: Services = Depends(get_services)):
    """
    Public, unauthenticated certificate check (the QR code on the label points here).
    Pass/fail comes from the stored hash; ledger presence is reported alongside as evidence.
    """
    return await services.oracle.verify_certificate(certificate_id)


@router.get("/batches/{batch_id}/verify")
async def verify_batch(batch_id: str, services: Services = Depends(get_services)):
    return await services.oracle.verify_finalization(batch_id)


@router.get("/batches/{batch_id}/history", response_model=BatchHistory)
async def batch_history(batch_id: str, services: Services = Depends(get_services)):
    """Anchor events recorded on the ledger for this batch; empty when the ledger can't be reached."""
    events = await services.oracle.get_batch_history(batch_id)
    return {"batchId": batch_id, "events": events}
