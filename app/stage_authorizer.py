# backend/app/stage_authorizer.py
from typing import Dict, FrozenSet

from app.errors import AuthorizationError
from app.models.domain import Actor, Role, StageType

# Who may create / approve each stage. Fixed table, not computed.
STAGE_PERMISSIONS: Dict[StageType, Dict[str, FrozenSet[Role]]] = {
    StageType.HARVEST: {
        "create": frozenset({Role.PRODUCER, Role.ADMIN}),
        "approve": frozenset({Role.QA, Role.CERTIFIER, Role.ADMIN}),
    },
    StageType.PACKING: {
        "create": frozenset({Role.PRODUCER, Role.QA, Role.ADMIN}),
        "approve": frozenset({Role.QA, Role.CERTIFIER, Role.ADMIN}),
    },
    StageType.COLD_CHAIN: {
        "create": frozenset({Role.PRODUCER, Role.QA, Role.DRIVER, Role.ADMIN}),
        "approve": frozenset({Role.QA, Role.CERTIFIER, Role.ADMIN}),
    },
    StageType.EXPORT: {
        "create": frozenset({Role.EXPORTER, Role.ADMIN}),
        "approve": frozenset({Role.EXPORTER, Role.CERTIFIER, Role.ADMIN}),
    },
    StageType.DELIVERY: {
        "create": frozenset({Role.DRIVER, Role.EXPORTER, Role.ADMIN}),
        "approve": frozenset({Role.QA, Role.CERTIFIER, Role.ADMIN}),
    },
}

# May deviate from canonical order and assert stages as already approved.
OVERRIDE_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN})


def can_create(role: Role, stage_type: StageType) -> bool:
    return Role(role) in STAGE_PERMISSIONS[StageType(stage_type)]["create"]


def can_approve(role: Role, stage_type: StageType) -> bool:
    return Role(role) in STAGE_PERMISSIONS[StageType(stage_type)]["approve"]


def can_override(role: Role) -> bool:
    return Role(role) in OVERRIDE_ROLES


def require_create(actor: Actor, stage_type: StageType):
    if not can_create(actor.role, stage_type):
        raise AuthorizationError(
            f"Role {actor.role.value} is not authorized to create {StageType(stage_type).value} stage",
            details={"role": actor.role.value, "stageType": StageType(stage_type).value, "action": "create"},
        )


def require_approve(actor: Actor, stage_type: StageType):
    if not can_approve(actor.role, stage_type):
        raise AuthorizationError(
            f"Role {actor.role.value} is not authorized to approve {StageType(stage_type).value} stage",
            details={"role": actor.role.value, "stageType": StageType(stage_type).value, "action": "approve"},
        )


def require_override(actor: Actor):
    if not can_override(actor.role):
        raise AuthorizationError(
            f"Role {actor.role.value} may not override stage ordering",
            details={"role": actor.role.value, "action": "override"},
        )
