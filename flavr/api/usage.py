"""
Usage quota API routes.

The generation service calls /check before generating and /record after a
generation succeeds (before answering its own caller).
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flavr.core.auth import get_identity
from flavr.features.usage.service import Identity, QuotaDecision, UsageKind, get_quota_engine


router = APIRouter(prefix="/usage", tags=["usage"])


class UsageRequest(BaseModel):
    kind: UsageKind = UsageKind.RECIPE
    cached: bool = False


class QuotaResponse(BaseModel):
    allowed: bool
    used: int
    limit: int
    remaining: Optional[int] = None
    tier: str
    cached: bool = False


def _decision_payload(decision: QuotaDecision) -> dict:
    return {
        "allowed": decision.allowed,
        "used": decision.used,
        "limit": decision.limit,
        "remaining": decision.remaining,
        "tier": decision.tier.value,
        "cached": decision.cached,
    }


@router.post("/check", response_model=QuotaResponse)
def check_quota(request: UsageRequest, identity: Identity = Depends(get_identity)):
    """Quota exhaustion is a normal answer (allowed=false), not an error."""
    decision = get_quota_engine().can_generate(identity, request.kind.value, cached=request.cached)
    return _decision_payload(decision)


@router.post("/record", response_model=QuotaResponse)
def record_usage(request: UsageRequest, identity: Identity = Depends(get_identity)):
    quota = get_quota_engine()
    quota.record_consumption(identity, request.kind.value, cached=request.cached)
    decision = quota.can_generate(identity, request.kind.value, cached=request.cached)
    return _decision_payload(decision)
