# app/routes/batches.py
from typing import Optional

from fastapi import APIRouter, Depends

from app.database import finalization_helper, stage_helper
from app.models.domain import Actor
from app.models.public import BatchStages, FinalizationView, StageCreate, StageReview, StageView
from app.services import Services, get_services
from utils.jwt import current_actor

router = APIRouter(prefix="/api/batches", tags=["batches"])


def _stages_view(result: dict) -> dict:
    return {
        "stages": [stage_helper(s) for s in result["stages"]],
        "currentStage": result["currentStage"],
        "nextStage": result["nextStage"],
        "isComplete": result["isComplete"],
        "progress": result["progress"],
    }


# =====================================================
# STAGES
# =====================================================

@router.get("/{batch_id}/stages", response_model=BatchStages)
async def get_batch_stages(batch_id: str, actor: Actor = Depends(current_actor),
                           services: Services = Depends(get_services)):
    return _stages_view(await services.stages.get_batch_stages(batch_id))


@router.post("/{batch_id}/stages", status_code=201)
async def create_stage(batch_id: str, data: StageCreate, actor: Actor = Depends(current_actor),
                       services: Services = Depends(get_services)):
    details = {
        "location": data.location,
        "latitude": data.latitude,
        "longitude": data.longitude,
        "notes": data.notes,
        "evidence_url": data.evidenceUrl,
    }
    if data.stageType is None and not (data.override or data.systemAsserted):
        result = await services.stages.create_next_stage(batch_id, actor, **details)
    else:
        result = await services.stages.create_specific_stage(
            batch_id,
            data.stageType or (await services.stages.get_batch_stages(batch_id))["nextStage"],
            actor,
            override=data.override,
            system_asserted=data.systemAsserted,
            **details,
        )
    return {"stage": stage_helper(result["stage"]), "isComplete": result["isComplete"]}


@router.post("/{batch_id}/stages/{stage_type}/approve", response_model=StageView)
async def approve_stage(batch_id: str, stage_type: str, body: Optional[StageReview] = None,
                        actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return stage_helper(await services.stages.approve_stage(batch_id, stage_type, actor, body.notes if body else None))


@router.post("/{batch_id}/stages/{stage_type}/reject", response_model=StageView)
async def reject_stage(batch_id: str, stage_type: str, body: Optional[StageReview] = None,
                       actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return stage_helper(await services.stages.reject_stage(batch_id, stage_type, actor, body.notes if body else None))


@router.post("/{batch_id}/stages/{stage_type}/flag", response_model=StageView)
async def flag_stage(batch_id: str, stage_type: str, body: Optional[StageReview] = None,
                     actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return stage_helper(await services.stages.flag_stage(batch_id, stage_type, actor, body.notes if body else None))


# =====================================================
# FINALIZATION
# =====================================================

@router.get("/{batch_id}/finalization/ready")
async def finalization_ready(batch_id: str, actor: Actor = Depends(current_actor),
                             services: Services = Depends(get_services)):
    return {"batchId": batch_id, "ready": await services.finalization.is_ready_for_finalization(batch_id)}


@router.post("/{batch_id}/finalize", response_model=FinalizationView, status_code=201)
async def finalize_batch(batch_id: str, actor: Actor = Depends(current_actor),
                         services: Services = Depends(get_services)):
    return await services.finalization.finalize(batch_id)


@router.get("/{batch_id}/finalization")
async def get_finalization(batch_id: str, actor: Actor = Depends(current_actor),
                           services: Services = Depends(get_services)):
    return finalization_helper(await services.finalization.get_finalization(batch_id))
