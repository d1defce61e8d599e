# backend/app/certificate_issuer.py
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from app.anchoring import CERTIFICATE_EVENT, advisory_anchor, origin_coordinates
from app.canonical import canonical_json, content_hash, to_iso
from app.errors import ConflictError, NotFoundError, ValidationError
from app.models.domain import STAGE_ORDER, CertificateGrade, StageStatus, StageType

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = "1.0.0"

# Each grade's requirement is a superset of the grade below it.
REQUIRED_STAGES_BY_GRADE: Dict[CertificateGrade, List[StageType]] = {
    CertificateGrade.DOMESTIC: [StageType.HARVEST, StageType.PACKING],
    CertificateGrade.EXPORT: [StageType.HARVEST, StageType.PACKING, StageType.COLD_CHAIN, StageType.EXPORT],
    CertificateGrade.PREMIUM: list(STAGE_ORDER),
}


def parse_grade(value) -> CertificateGrade:
    if isinstance(value, CertificateGrade):
        return value
    try:
        return CertificateGrade(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown certificate grade {value!r}",
            code="INVALID_GRADE",
            details={"allowed": [g.value for g in CertificateGrade]},
        )


class CertificateIssuer:
    def __init__(self, store, ledger=None):
        self.store = store
        self.ledger = ledger

    # =====================================================
    # ELIGIBILITY
    # =====================================================

    async def can_issue(self, batch_id: str, grade) -> dict:
        grade = parse_grade(grade)
        stages = await self.store.list_stages(batch_id)
        approved = {s["stage_type"] for s in stages if s["status"] == StageStatus.APPROVED.value}
        missing = [t.value for t in REQUIRED_STAGES_BY_GRADE[grade] if t.value not in approved]

        if missing:
            return {
                "canIssue": False,
                "missingStages": missing,
                "message": f"Missing required stages: {', '.join(missing)}",
            }
        return {"canIssue": True, "missingStages": [], "message": "All requirements met for certificate issuance"}

    # =====================================================
    # ISSUE
    # =====================================================

    async def issue(
        self,
        batch_id: str,
        grade,
        certifying_body: str,
        validity_days: int,
        issued_by: str,
    ) -> dict:
        grade = parse_grade(grade)
        if not isinstance(validity_days, int) or isinstance(validity_days, bool) or validity_days <= 0:
            raise ValidationError("validityDays must be a positive integer",
                                  details={"validityDays": validity_days})
        if not certifying_body:
            raise ValidationError("certifyingBody is required")

        batch = await self.store.get_batch(batch_id)
        if not batch:
            raise NotFoundError("Batch not found", details={"batchId": batch_id})

        eligibility = await self.can_issue(batch_id, grade)
        if not eligibility["canIssue"]:
            raise ConflictError(
                f"Cannot issue {grade.value} certificate. Missing approved stages: "
                f"{', '.join(eligibility['missingStages'])}",
                code="REQUIREMENTS_NOT_MET",
                details={"batchId": batch_id, "grade": grade.value, "missingStages": eligibility["missingStages"]},
            )

        stages = await self.store.list_stages(batch_id)
        issued_at = datetime.now(timezone.utc)
        valid_to = issued_at + timedelta(days=validity_days)
        certificate_id = f"CERT-{uuid.uuid4().hex[:12].upper()}"

        payload = await self._build_payload(
            certificate_id, batch, stages, grade, certifying_body, issued_by, issued_at, valid_to
        )
        snapshot = canonical_json(payload)
        digest = content_hash(snapshot)

        certificate = {
            "certificate_id": certificate_id,
            "batch_id": batch_id,
            "grade": grade.value,
            "certifying_body": certifying_body,
            "payload_snapshot": snapshot.decode("utf-8"),
            "content_hash": digest,
            "anchor_tx_id": None,
            "anchor_event_id": None,
            "anchored_at": None,
            "valid_from": issued_at,
            "valid_to": valid_to,
            "issued_by": issued_by,
            "issued_at": issued_at,
        }
        await self.store.insert_certificate(certificate)
        logger.info("Quality certificate issued id=%s batch=%s grade=%s hash=%s",
                    certificate_id, batch_id, grade.value, digest)

        lat, lng = origin_coordinates(batch, stages)
        result = await advisory_anchor(self.ledger, CERTIFICATE_EVENT, batch_id, lat, lng, digest)
        if result is not None and await self.store.set_certificate_anchor(certificate_id, result.tx_id, result.event_id):
            certificate.update(anchor_tx_id=result.tx_id, anchor_event_id=result.event_id)
            logger.info("Certificate stored on ledger id=%s tx=%s", certificate_id, result.tx_id)

        return {
            "certificate": certificate,
            "payload": payload,
            "hash": digest,
            "txId": certificate["anchor_tx_id"],
        }

    async def _build_payload(self, certificate_id, batch, stages, grade, certifying_body, issued_by,
                             issued_at, valid_to) -> dict:
        batch_id = batch["batch_id"]
        payload = {
            "certificateId": certificate_id,
            "batchId": batch_id,
            "grade": grade.value,
            "certifyingBody": certifying_body,
            "validFrom": to_iso(issued_at),
            "validTo": to_iso(valid_to),
            "issuedAt": to_iso(issued_at),
            "issuedBy": issued_by,
            "batch": {
                "producerId": batch.get("producer_id"),
                "cropType": batch.get("crop_type") or batch.get("variety"),
                "variety": batch.get("variety"),
                "quantityKg": batch.get("weight_kg"),
                "harvestDate": batch.get("harvest_date"),
                "origin": batch.get("origin"),
            },
            "stages": [
                {
                    "stageType": s["stage_type"],
                    "status": s["status"],
                    "actorId": s["actor_id"],
                    "timestamp": s["timestamp"],
                    "location": s.get("location"),
                }
                for s in stages
                if s["status"] == StageStatus.APPROVED.value
            ],
            "version": PAYLOAD_VERSION,
        }

        seals = await self.store.list_seals(batch_id)
        seal_summary = [
            {
                "uid": seal["seal_number"],
                "status": seal.get("status"),
                "lastVerifiedAt": seal.get("last_verified_at"),
            }
            for seal in seals
            if seal.get("seal_number")
        ]
        if seal_summary:
            payload["nfcSeals"] = sorted(seal_summary, key=lambda s: s["uid"])

        temperature = temperature_summary(await self.store.list_temperature_readings(batch_id))
        if temperature:
            payload["temperatureSummary"] = temperature

        return payload

    # =====================================================
    # VERIFY / READ
    # =====================================================

    async def verify(self, certificate_id: str, now: Optional[datetime] = None) -> dict:
        """Recompute the snapshot hash and check expiry. Never raises for bad data: fails closed."""
        now = now or datetime.now(timezone.utc)
        certificate = await self.store.get_certificate(certificate_id)
        if not certificate:
            return {"isValid": False, "isExpired": False, "computedHash": None, "storedHash": None,
                    "certificate": None}

        stored_hash = certificate.get("content_hash")
        is_expired = _is_expired(certificate.get("valid_to"), now)

        snapshot = certificate.get("payload_snapshot")
        if not isinstance(snapshot, str) or not snapshot:
            logger.warning("Certificate %s has no usable payload snapshot", certificate_id)
            return {"isValid": False, "isExpired": is_expired, "computedHash": None,
                    "storedHash": stored_hash, "certificate": certificate}

        computed = content_hash(snapshot)
        is_valid = computed == stored_hash and not is_expired
        if computed != stored_hash:
            logger.warning("Certificate %s hash mismatch stored=%s computed=%s", certificate_id, stored_hash, computed)

        return {"isValid": is_valid, "isExpired": is_expired, "computedHash": computed,
                "storedHash": stored_hash, "certificate": certificate}

    async def get_certificate(self, certificate_id: str) -> dict:
        certificate = await self.store.get_certificate(certificate_id)
        if not certificate:
            raise NotFoundError("Certificate not found", details={"certificateId": certificate_id})
        return certificate

    async def get_batch_certificates(self, batch_id: str) -> List[dict]:
        return await self.store.list_certificates(batch_id)

    async def get_valid_certificates(self, batch_id: str, now: Optional[datetime] = None) -> List[dict]:
        now = now or datetime.now(timezone.utc)
        return [c for c in await self.store.list_certificates(batch_id) if not _is_expired(c.get("valid_to"), now)]


def temperature_summary(readings: List[dict]) -> Optional[dict]:
    values = [float(r["value"]) for r in readings if r.get("value") is not None]
    if not values:
        return None
    return {
        "count": len(values),
        "minValue": min(values),
        "maxValue": max(values),
        "avgValue": round(sum(values) / len(values), 3),
        "outOfRangeCount": sum(1 for r in readings if r.get("is_out_of_range")),
    }


def _is_expired(valid_to, now: datetime) -> bool:
    # Unreadable expiry counts as expired.
    if not isinstance(valid_to, datetime):
        return True
    if valid_to.tzinfo is None:
        valid_to = valid_to.replace(tzinfo=timezone.utc)
    return valid_to < now
