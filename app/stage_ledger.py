# backend/app/stage_ledger.py
"""Per-batch verification stages and their status state machine.

A batch moves through HARVEST -> PACKING -> COLD_CHAIN -> EXPORT -> DELIVERY.
Each (batch, stage type) pair holds at most one record; the store's
conditional create is what enforces it when two requests race.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from app import stage_authorizer
from app.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models.domain import (
    STAGE_ORDER,
    Actor,
    StageStatus,
    StageType,
    get_stage_index,
    is_valid_stage_transition,
    is_valid_status_transition,
    next_stage_after,
)

logger = logging.getLogger(__name__)


def parse_stage_type(value) -> StageType:
    if isinstance(value, StageType):
        return value
    try:
        return StageType(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown stage type {value!r}",
            code="INVALID_STAGE_TYPE",
            details={"allowed": [s.value for s in STAGE_ORDER]},
        )


def parse_stage_status(value) -> StageStatus:
    if isinstance(value, StageStatus):
        return value
    try:
        return StageStatus(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown stage status {value!r}",
            code="INVALID_STATUS",
            details={"allowed": [s.value for s in StageStatus]},
        )


def latest_approved(stages: List[dict]) -> Optional[StageType]:
    current = None
    for stage in stages:
        if stage["status"] == StageStatus.APPROVED.value:
            current = StageType(stage["stage_type"])
    return current


class StageLedger:
    def __init__(self, store):
        self.store = store

    # =====================================================
    # READ
    # =====================================================

    async def get_batch_stages(self, batch_id: str) -> dict:
        stages = await self.store.list_stages(batch_id)

        current = latest_approved(stages)
        approved_count = sum(1 for s in stages if s["status"] == StageStatus.APPROVED.value)
        is_complete = approved_count == len(STAGE_ORDER)

        return {
            "stages": stages,
            "currentStage": current,
            "nextStage": None if is_complete else next_stage_after(current),
            "isComplete": is_complete,
            "progress": round(approved_count / len(STAGE_ORDER) * 100),
        }

    async def get_stage(self, stage_id: str) -> dict:
        stage = await self.store.get_stage(stage_id)
        if not stage:
            raise NotFoundError("Verification stage not found", details={"stageId": stage_id})
        return stage

    async def get_stage_by_type(self, batch_id: str, stage_type) -> dict:
        stage_type = parse_stage_type(stage_type)
        stage = await self.store.get_stage_by_type(batch_id, stage_type.value)
        if not stage:
            raise NotFoundError(
                f"Stage {stage_type.value} not found for batch {batch_id}",
                details={"batchId": batch_id, "stageType": stage_type.value},
            )
        return stage

    async def are_all_stages_approved(self, batch_id: str) -> bool:
        stages = await self.store.list_stages(batch_id)
        return (
            len(stages) == len(STAGE_ORDER)
            and {s["stage_type"] for s in stages} == {t.value for t in STAGE_ORDER}
            and all(s["status"] == StageStatus.APPROVED.value for s in stages)
        )

    async def get_stage_timeline(self, batch_id: str) -> dict:
        """Ordered timeline in the shape that finalization hashes."""
        stages = await self.store.list_stages(batch_id)
        all_approved = len(stages) == len(STAGE_ORDER) and all(
            s["status"] == StageStatus.APPROVED.value for s in stages
        )
        return {
            "batchId": batch_id,
            "stages": [timeline_entry(s) for s in stages],
            "completedAt": stages[-1]["timestamp"] if all_approved else None,
        }

    # =====================================================
    # CREATE
    # =====================================================

    async def create_next_stage(self, batch_id: str, actor: Actor, **details) -> dict:
        stages = await self.store.list_stages(batch_id)
        next_type = next_stage_after(latest_approved(stages))
        if next_type is None:
            raise ConflictError(
                "All stages have already been completed for this batch",
                code="STAGES_COMPLETE",
                details={"batchId": batch_id},
            )

        stage_authorizer.require_create(actor, next_type)
        return await self._insert(batch_id, next_type, actor, StageStatus.PENDING, details)

    async def create_specific_stage(
        self,
        batch_id: str,
        stage_type,
        actor: Actor,
        override: bool = False,
        system_asserted: bool = False,
        **details,
    ) -> dict:
        stage_type = parse_stage_type(stage_type)

        if override or system_asserted:
            stage_authorizer.require_override(actor)

        if not override:
            stages = await self.store.list_stages(batch_id)
            current = latest_approved(stages)
            if not is_valid_stage_transition(current, stage_type):
                expected = next_stage_after(current)
                raise ValidationError(
                    f"Invalid stage order. Expected {expected.value if expected else 'none'}, got {stage_type.value}",
                    code="STAGE_OUT_OF_ORDER",
                    details={
                        "batchId": batch_id,
                        "expected": expected.value if expected else None,
                        "requested": stage_type.value,
                    },
                )

        stage_authorizer.require_create(actor, stage_type)
        status = StageStatus.APPROVED if system_asserted else StageStatus.PENDING
        return await self._insert(batch_id, stage_type, actor, status, details)

    async def _insert(self, batch_id: str, stage_type: StageType, actor: Actor, status: StageStatus, details: dict) -> dict:
        now = datetime.now(timezone.utc)
        doc = {
            "stage_id": f"STG-{uuid.uuid4().hex[:12].upper()}",
            "batch_id": batch_id,
            "stage_type": stage_type.value,
            "stage_index": get_stage_index(stage_type),
            "status": status.value,
            "actor_id": actor.id,
            "timestamp": now,
            "location": details.get("location"),
            "latitude": details.get("latitude"),
            "longitude": details.get("longitude"),
            "notes": details.get("notes"),
            "evidence_url": details.get("evidence_url"),
            "reviewed_by": actor.id if status == StageStatus.APPROVED else None,
            "updated_at": now,
        }

        created = await self.store.create_stage_if_absent(doc)
        if not created:
            raise ConflictError(
                f"Stage {stage_type.value} already exists for this batch",
                code="STAGE_EXISTS",
                details={"batchId": batch_id, "stageType": stage_type.value},
            )

        logger.info(
            "Verification stage created batch=%s stage=%s id=%s actor=%s status=%s",
            batch_id, stage_type.value, doc["stage_id"], actor.id, status.value,
        )
        return {"stage": doc, "isComplete": await self.are_all_stages_approved(batch_id)}

    # =====================================================
    # STATUS TRANSITIONS
    # =====================================================

    async def transition(self, stage_id: str, new_status, actor: Actor, notes: Optional[str] = None) -> dict:
        new_status = parse_stage_status(new_status)
        stage = await self.get_stage(stage_id)
        stage_type = StageType(stage["stage_type"])
        old_status = StageStatus(stage["status"])

        if not is_valid_status_transition(old_status, new_status):
            raise ValidationError(
                f"Invalid status transition from {old_status.value} to {new_status.value}",
                code="INVALID_TRANSITION",
                details={"stageId": stage_id, "from": old_status.value, "to": new_status.value},
            )

        self._require_transition_permission(actor, stage_type, new_status)

        if old_status == new_status:
            return stage

        fields = {
            "status": new_status.value,
            "reviewed_by": actor.id,
            "updated_at": datetime.now(timezone.utc),
        }
        if notes is not None:
            fields["notes"] = notes

        updated = await self.store.update_stage_status(stage_id, old_status.value, fields)
        if updated is None:
            raise ConflictError(
                "Stage was modified concurrently; reload and retry",
                code="CONCURRENT_MODIFICATION",
                details={"stageId": stage_id, "expected": old_status.value},
            )

        logger.info(
            "Verification stage updated id=%s batch=%s stage=%s %s->%s actor=%s",
            stage_id, stage["batch_id"], stage_type.value, old_status.value, new_status.value, actor.id,
        )
        return updated

    @staticmethod
    def _require_transition_permission(actor: Actor, stage_type: StageType, new_status: StageStatus):
        if new_status in (StageStatus.APPROVED, StageStatus.REJECTED):
            stage_authorizer.require_approve(actor, stage_type)
        elif new_status == StageStatus.FLAGGED:
            if not (stage_authorizer.can_approve(actor.role, stage_type)
                    or stage_authorizer.can_create(actor.role, stage_type)):
                raise AuthorizationError(
                    f"Role {actor.role.value} is not authorized to flag {stage_type.value} stage",
                    details={"role": actor.role.value, "stageType": stage_type.value, "action": "flag"},
                )

    async def approve_stage(self, batch_id: str, stage_type, actor: Actor, notes: Optional[str] = None) -> dict:
        stage = await self.get_stage_by_type(batch_id, stage_type)
        return await self.transition(stage["stage_id"], StageStatus.APPROVED, actor, notes)

    async def reject_stage(self, batch_id: str, stage_type, actor: Actor, notes: Optional[str] = None) -> dict:
        stage = await self.get_stage_by_type(batch_id, stage_type)
        return await self.transition(stage["stage_id"], StageStatus.REJECTED, actor, notes)

    async def flag_stage(self, batch_id: str, stage_type, actor: Actor, notes: Optional[str] = None) -> dict:
        stage = await self.get_stage_by_type(batch_id, stage_type)
        return await self.transition(stage["stage_id"], StageStatus.FLAGGED, actor, notes)


def timeline_entry(stage: dict) -> dict:
    lat, lng = stage.get("latitude"), stage.get("longitude")
    return {
        "stageType": stage["stage_type"],
        "status": stage["status"],
        "actorId": stage["actor_id"],
        "timestamp": stage["timestamp"],
        "location": stage.get("location"),
        "coordinates": {"lat": lat, "lng": lng} if lat is not None and lng is not None else None,
    }
