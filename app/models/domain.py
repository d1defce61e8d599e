# backend/app/models/domain.py
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class StageType(str, Enum):
    HARVEST = "HARVEST"
    PACKING = "PACKING"
    COLD_CHAIN = "COLD_CHAIN"
    EXPORT = "EXPORT"
    DELIVERY = "DELIVERY"


class StageStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FLAGGED = "FLAGGED"


class Role(str, Enum):
    PRODUCER = "PRODUCER"
    QA = "QA"
    CERTIFIER = "CERTIFIER"
    EXPORTER = "EXPORTER"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"


class CertificateGrade(str, Enum):
    PREMIUM = "PREMIUM"
    EXPORT = "EXPORT"
    DOMESTIC = "DOMESTIC"


# Canonical custody order
STAGE_ORDER: List[StageType] = [
    StageType.HARVEST,
    StageType.PACKING,
    StageType.COLD_CHAIN,
    StageType.EXPORT,
    StageType.DELIVERY,
]

# Empty list = terminal state
VALID_STATUS_TRANSITIONS = {
    StageStatus.PENDING: [StageStatus.APPROVED, StageStatus.REJECTED, StageStatus.FLAGGED],
    StageStatus.FLAGGED: [StageStatus.APPROVED, StageStatus.REJECTED],
    StageStatus.APPROVED: [],
    StageStatus.REJECTED: [],
}


def get_stage_index(stage_type: StageType) -> int:
    return STAGE_ORDER.index(StageType(stage_type))


def next_stage_after(stage_type: Optional[StageType]) -> Optional[StageType]:
    """Slot that follows `stage_type`; HARVEST when nothing is approved yet."""
    if stage_type is None:
        return STAGE_ORDER[0]
    idx = get_stage_index(stage_type)
    return STAGE_ORDER[idx + 1] if idx < len(STAGE_ORDER) - 1 else None


def is_valid_stage_transition(current: Optional[StageType], target: StageType) -> bool:
    return next_stage_after(current) == StageType(target)


def is_valid_status_transition(current: StageStatus, target: StageStatus) -> bool:
    current, target = StageStatus(current), StageStatus(target)
    if current == target:
        return True
    return target in VALID_STATUS_TRANSITIONS[current]


@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller: identity and role come from the bearer token."""
    id: str
    role: Role
    name: Optional[str] = None


@dataclass
class AnchorResult:
    tx_id: Optional[str]
    event_id: Optional[str]
    resource_used: Optional[int] = None
    already_anchored: bool = False
