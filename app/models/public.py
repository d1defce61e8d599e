# backend/app/models/public.py

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from app.models.domain import CertificateGrade, StageType


# ================= REQUESTS =================

class StageCreate(BaseModel):
    stageType: Optional[StageType] = Field(None, description="Omit to create the next stage in canonical order.")
    override: bool = False
    systemAsserted: bool = False
    location: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    notes: Optional[str] = None
    evidenceUrl: Optional[str] = None


class StageReview(BaseModel):
    notes: Optional[str] = None


class CertificateIssue(BaseModel):
    grade: CertificateGrade
    certifyingBody: str = Field(..., min_length=1)
    validityDays: int = Field(365, gt=0)


# ================= RESPONSES =================

class StageView(BaseModel):
    id: str
    batchId: str
    stageType: StageType
    status: str
    actorId: str
    timestamp: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: Optional[str] = None
    evidenceUrl: Optional[str] = None
    reviewedBy: Optional[str] = None
    updatedAt: Optional[str] = None


class BatchStages(BaseModel):
    stages: List[StageView]
    currentStage: Optional[StageType] = None
    nextStage: Optional[StageType] = None
    isComplete: bool
    progress: int = Field(description="Percent of the five stages approved.")


class FinalizationView(BaseModel):
    batchId: str
    hash: str
    txId: Optional[str] = None
    finalizedAt: Optional[str] = None


class CertificateVerification(BaseModel):
    certificateId: str
    isValid: bool
    isExpired: bool
    computedHash: Optional[str] = None
    storedHash: Optional[str] = None
    anchoredOnLedger: Optional[bool] = Field(
        None, description="Advisory ledger evidence; null when the ledger could not be consulted."
    )


class LedgerEvent(BaseModel):
    eventId: Optional[str] = None
    eventType: Optional[str] = None
    producer: Optional[str] = None
    batchId: Optional[str] = None
    timestamp: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    contentHash: Optional[str] = None
    previousEventHash: Optional[str] = None
    verified: Optional[bool] = None


class BatchHistory(BaseModel):
    batchId: str
    events: List[LedgerEvent]
