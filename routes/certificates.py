# app/routes/certificates.py
from fastapi import APIRouter, Depends, Query

from app.database import certificate_helper
from app.models.domain import Actor
from app.models.public import CertificateIssue
from app.services import Services, get_services
from utils.jwt import current_actor

router = APIRouter(prefix="/api", tags=["certificates"])


@router.get("/batches/{batch_id}/certificates/eligibility")
async def certificate_eligibility(batch_id: str, grade: str = Query(...), actor: Actor = Depends(current_actor),
                                  services: Services = Depends(get_services)):
    result = await services.certificates.can_issue(batch_id, grade)
    return {"batchId": batch_id, "grade": grade.upper(), **result}


@router.post("/batches/{batch_id}/certificates", status_code=201)
async def issue_certificate(batch_id: str, data: CertificateIssue, actor: Actor = Depends(current_actor),
                            services: Services = Depends(get_services)):
    result = await services.certificates.issue(
        batch_id,
        data.grade,
        certifying_body=data.certifyingBody,
        validity_days=data.validityDays,
        issued_by=actor.id,
    )
    return {
        "certificate": certificate_helper(result["certificate"]),
        "payload": result["payload"],
        "hash": result["hash"],
        "txId": result["txId"],
    }


@router.get("/batches/{batch_id}/certificates")
async def list_batch_certificates(batch_id: str, valid_only: bool = False, actor: Actor = Depends(current_actor),
                                  services: Services = Depends(get_services)):
    if valid_only:
        certificates = await services.certificates.get_valid_certificates(batch_id)
    else:
        certificates = await services.certificates.get_batch_certificates(batch_id)
    return [certificate_helper(c) for c in certificates]


@router.get("/certificates/{certificate_id}")
async def get_certificate(certificate_id: str, actor: Actor = Depends(current_actor),
                          services: Services = Depends(get_services)):
    return certificate_helper(await services.certificates.get_certificate(certificate_id))
