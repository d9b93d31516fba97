"""
flavr/features/usage/service.py

Usage quota engine.

Handles:
- Quota checks for signed-in users and anonymous pseudo identities
- Consumption recording (atomic increment, after a successful generation)
- Lazy calendar-month reset before every evaluation

Cached responses bypass quota entirely: never counted, never blocked.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Union
import logging

from flavr.core.errors import QuotaExceededError, ValidationError
from flavr.features.entitlements import store as entitlement_store
from flavr.features.entitlements.service import ReconciliationEngine, get_engine
from flavr.features.plans.service import TierName, get_tier_limits, is_unlimited, resolve_tier_name
from flavr.models.entitlement import UnitLimits


logger = logging.getLogger(__name__)


class UsageKind(str, Enum):
    RECIPE = "recipe"
    IMAGE = "image"


@dataclass(frozen=True)
class UserIdentity:
    user_id: str


@dataclass(frozen=True)
class PseudoIdentity:
    pseudo_id: str
    fingerprint: Optional[str] = None


Identity = Union[UserIdentity, PseudoIdentity]


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    used: int
    limit: int  # -1 = unlimited
    tier: TierName
    cached: bool = False

    @property
    def remaining(self) -> Optional[int]:
        if is_unlimited(self.limit):
            return None
        return max(0, self.limit - self.used)


def _limit_for(limits: UnitLimits, kind: UsageKind) -> int:
    return limits.recipes if kind == UsageKind.RECIPE else limits.images


class QuotaEngine:
    def __init__(
        self,
        engine: Optional[ReconciliationEngine] = None,
        store=entitlement_store,
        tiers: Callable[[TierName], UnitLimits] = get_tier_limits,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._engine = engine
        self.store = store
        self.tiers = tiers
        self.now_fn = now_fn

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine or get_engine()

    def _evaluate_pseudo(self, identity: PseudoIdentity, kind: UsageKind) -> QuotaDecision:
        if kind != UsageKind.RECIPE:
            raise ValidationError("Anonymous users can only generate recipes; sign in for images")
        now = self.now_fn()
        self.store.get_or_create_pseudo(identity.pseudo_id, identity.fingerprint, now=now)
        self.store.reset_pseudo_usage_if_new_month(identity.pseudo_id, now)
        record = self.store.get_pseudo(identity.pseudo_id)
        return QuotaDecision(
            allowed=record.recipes_used < record.recipe_limit,
            used=record.recipes_used,
            limit=record.recipe_limit,
            tier=TierName.FREE,
        )

    def _evaluate_user(self, identity: UserIdentity, kind: UsageKind) -> QuotaDecision:
        now = self.now_fn()
        self.store.ensure_record(identity.user_id, now=now)
        self.store.reset_usage_if_new_month(identity.user_id, now)

        entitled = self.engine.has_active_entitlement(identity.user_id)
        record = self.store.get_record(identity.user_id)
        tier = resolve_tier_name(operator_override=record.operator_override, entitled=entitled)
        limit = _limit_for(self.tiers(tier), kind)
        used = record.recipes_used if kind == UsageKind.RECIPE else record.images_used
        return QuotaDecision(
            allowed=is_unlimited(limit) or used < limit,
            used=used,
            limit=limit,
            tier=tier,
        )

    def can_generate(self, identity: Identity, kind: str = "recipe", cached: bool = False) -> QuotaDecision:
        kind = UsageKind(kind)
        if isinstance(identity, PseudoIdentity):
            decision = self._evaluate_pseudo(identity, kind)
        else:
            decision = self._evaluate_user(identity, kind)

        if cached:
            return QuotaDecision(
                allowed=True, used=decision.used, limit=decision.limit, tier=decision.tier, cached=True
            )

        log = logger.info if decision.allowed else logger.warning
        log(
            "[quota] ALLOWED" if decision.allowed else "[quota] DENIED",
            extra={
                "identity": _identity_key(identity),
                "kind": kind.value,
                "used": decision.used,
                "limit": decision.limit,
                "tier": decision.tier.value,
            },
        )
        return decision

    def require_generation_allowed(
        self, identity: Identity, kind: str = "recipe", cached: bool = False
    ) -> QuotaDecision:
        decision = self.can_generate(identity, kind, cached=cached)
        if not decision.allowed:
            raise QuotaExceededError(
                f"Monthly {UsageKind(kind).value} limit reached ({decision.used}/{decision.limit})"
            )
        return decision

    def record_consumption(self, identity: Identity, kind: str = "recipe", cached: bool = False) -> None:
        """Count one successful generation. Cached and unlimited identities are not counted."""
        kind = UsageKind(kind)
        if cached:
            return

        if isinstance(identity, PseudoIdentity):
            if kind != UsageKind.RECIPE:
                raise ValidationError("Anonymous users can only generate recipes; sign in for images")
            self.store.get_or_create_pseudo(identity.pseudo_id, identity.fingerprint, now=self.now_fn())
            self.store.increment_pseudo_usage(identity.pseudo_id)
            return

        record = self.store.get_record(identity.user_id) or self.store.ensure_record(
            identity.user_id, now=self.now_fn()
        )
        # Stored limits are written alongside has_entitlement, so no verifier call is needed here
        limit = record.recipe_limit if kind == UsageKind.RECIPE else record.image_limit
        if is_unlimited(limit):
            return
        self.store.increment_usage(identity.user_id, kind.value)

    def reset_usage(self, identity: Identity) -> bool:
        now = self.now_fn()
        if isinstance(identity, PseudoIdentity):
            reset = self.store.reset_pseudo_usage(identity.pseudo_id, now=now)
        else:
            reset = self.store.reset_usage(identity.user_id, now=now)
        logger.info(
            "[quota] usage reset",
            extra={"identity": _identity_key(identity), "reset": reset},
        )
        return reset


def _identity_key(identity: Identity) -> str:
    if isinstance(identity, PseudoIdentity):
        return f"pseudo:{identity.pseudo_id}"
    return f"user:{identity.user_id}"


_default_quota_engine: Optional[QuotaEngine] = None


def get_quota_engine() -> QuotaEngine:
    global _default_quota_engine
    if _default_quota_engine is None:
        _default_quota_engine = QuotaEngine()
    return _default_quota_engine


def set_quota_engine(engine: Optional[QuotaEngine]) -> None:
    global _default_quota_engine
    _default_quota_engine = engine
