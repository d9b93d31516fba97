"""
Admin API routes for entitlement operations.

All routes require the X-Admin-Key header (ADMIN_KEY).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flavr.core.auth import AdminActor, require_admin
from flavr.core.errors import NotFoundError, ValidationError
from flavr.features.entitlements import store as entitlement_store
from flavr.features.entitlements.service import get_engine
from flavr.features.usage.service import PseudoIdentity, UserIdentity, get_quota_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


class OperatorOverrideRequest(BaseModel):
    enabled: bool


class UsageResetRequest(BaseModel):
    user_id: Optional[str] = None
    pseudo_id: Optional[str] = None


@router.post("/operators/{user_id}")
def set_operator(user_id: str, body: OperatorOverrideRequest, actor: AdminActor = Depends(require_admin)) -> dict:
    """Grant or revoke the operator role (unlimited usage regardless of provider state)."""
    record = get_engine().set_operator_override(user_id, body.enabled)
    logger.info(
        "[admin] operator override set",
        extra={"user_id": user_id, "enabled": body.enabled, "actor_id": actor.actor_id},
    )
    return {
        "user_id": record.user_id,
        "operator_override": record.operator_override,
        "has_entitlement": record.has_entitlement,
    }


@router.post("/usage/reset")
def reset_usage(body: UsageResetRequest, actor: AdminActor = Depends(require_admin)) -> dict:
    if bool(body.user_id) == bool(body.pseudo_id):
        raise ValidationError("Provide exactly one of user_id or pseudo_id")

    identity = UserIdentity(body.user_id) if body.user_id else PseudoIdentity(body.pseudo_id)
    reset = get_quota_engine().reset_usage(identity)
    if not reset:
        raise NotFoundError("Identity not found")
    logger.info(
        "[admin] usage reset",
        extra={"user_id": body.user_id, "pseudo_id": body.pseudo_id, "actor_id": actor.actor_id},
    )
    return {"reset": True, "user_id": body.user_id, "pseudo_id": body.pseudo_id}


@router.post("/reconcile/{user_id}")
def reconcile_user(user_id: str, actor: AdminActor = Depends(require_admin)) -> dict:
    """On-demand reconciliation against the user's authoritative provider."""
    if entitlement_store.get_record(user_id) is None:
        raise NotFoundError("User has no entitlement record")
    outcome = get_engine().reconcile_one(user_id)
    logger.info(
        "[admin] reconcile requested",
        extra={"user_id": user_id, "outcome": outcome.value, "actor_id": actor.actor_id},
    )
    return {"user_id": user_id, "outcome": outcome.value}
