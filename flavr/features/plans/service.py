"""
flavr/features/plans/service.py

Static tier table.

Three tiers decide monthly unit limits:
- free: FREE_RECIPE_LIMIT / FREE_IMAGE_LIMIT (default 3 / 3)
- paid: unlimited (any active or trialing subscription, monthly or annual)
- operator: unlimited regardless of provider state (role flag on the record)

Limits of -1 mean unlimited.
"""

from enum import Enum
from typing import Optional

from flavr.core.config import settings
from flavr.models.entitlement import UNLIMITED, UnitLimits


class TierName(str, Enum):
    FREE = "free"
    PAID = "paid"
    OPERATOR = "operator"


def get_tier_limits(tier: TierName, *, settings_obj: Optional[object] = None) -> UnitLimits:
    cfg = settings_obj or settings
    if tier == TierName.FREE:
        return UnitLimits(recipes=cfg.FREE_RECIPE_LIMIT, images=cfg.FREE_IMAGE_LIMIT)
    return UnitLimits(recipes=UNLIMITED, images=UNLIMITED)


def resolve_tier_name(*, operator_override: bool, entitled: bool) -> TierName:
    if operator_override:
        return TierName.OPERATOR
    if entitled:
        return TierName.PAID
    return TierName.FREE


def get_pseudo_recipe_limit(*, settings_obj: Optional[object] = None) -> int:
    cfg = settings_obj or settings
    return cfg.PSEUDO_RECIPE_LIMIT


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED
