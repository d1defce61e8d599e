from fastapi import APIRouter, Depends, Query

from app.errors import AuthorizationError
from app.models.domain import Actor, Role
from app.services import Services, get_services
from utils.jwt import current_actor

# Base path for all Admin routes in this file
router = APIRouter(prefix="/api/admin", tags=["Admin"])


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if actor.role != Role.ADMIN:
        raise AuthorizationError("Admins only", details={"role": actor.role.value})
    return actor


# 1. Anchor reconciliation - fills txIds for records whose first anchor attempt failed
@router.post("/anchors/reconcile")
async def reconcile_anchors(limit: int = Query(50, gt=0, le=500), actor: Actor = Depends(require_admin),
                            services: Services = Depends(get_services)):
    return await services.reconciler.reconcile(limit)


# 2. Ledger bridge status
@router.get("/ledger/health")
async def ledger_health(actor: Actor = Depends(require_admin), services: Services = Depends(get_services)):
    if services.ledger is None:
        return {"configured": False, "healthy": False}
    return {"configured": True, "healthy": await services.ledger.is_healthy()}
