"""
flavr/models/entitlement.py

Entitlement state models.

An EntitlementRecord is the per-user answer to "can this user generate
content, and how much". It is written only by the reconciliation engine
(status/tier/provider/dates) and the quota engine (usage counters).
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


UNLIMITED = -1


class EntitlementStatus(str, Enum):
    NONE = "none"
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


ENTITLED_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.TRIALING})


class Tier(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"


class Provider(str, Enum):
    NONE = "none"
    STRIPE = "stripe"
    APPLE = "apple"
    GOOGLE = "google"


# Linkage columns owned by each provider. A record only ever carries the
# columns of its authoritative provider.
PROVIDER_LINKAGE_FIELDS: Dict[Provider, tuple] = {
    Provider.STRIPE: ("stripe_customer_id", "stripe_subscription_id"),
    Provider.APPLE: ("apple_original_transaction_id", "apple_receipt_blob"),
    Provider.GOOGLE: ("google_purchase_token", "google_order_id", "google_product_id"),
}

ALL_LINKAGE_FIELDS = tuple(f for fields in PROVIDER_LINKAGE_FIELDS.values() for f in fields)


def derive_has_entitlement(status: EntitlementStatus, operator_override: bool) -> bool:
    """The only valid derivation of the cached has_entitlement flag."""
    return EntitlementStatus(status) in ENTITLED_STATUSES or bool(operator_override)


def tier_from_product_id(product_id: Optional[str]) -> Tier:
    """App-store product ids name their billing period (e.g. flavr_plus_annual)."""
    if product_id and ("annual" in product_id.lower() or "year" in product_id.lower()):
        return Tier.ANNUAL
    return Tier.MONTHLY


class UnitLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    recipes: int
    images: int


class EntitlementRecord(BaseModel):
    """
    Durable per-user entitlement state.

    Invariants:
    - has_entitlement == status in {active, trialing} or operator_override
    - provider != none iff a linkage field of that provider is populated
    - recipes_used/images_used >= 0, zeroed once per calendar month
    - period_end is copied from the authoritative provider, never computed
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    has_entitlement: bool = False
    status: EntitlementStatus = EntitlementStatus.NONE
    tier: Tier = Tier.FREE
    provider: Provider = Provider.NONE
    operator_override: bool = False

    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    apple_original_transaction_id: Optional[str] = None
    apple_receipt_blob: Optional[str] = None
    google_purchase_token: Optional[str] = None
    google_order_id: Optional[str] = None
    google_product_id: Optional[str] = None

    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    renew_at: Optional[datetime] = None

    recipe_limit: int
    image_limit: int
    recipes_used: int = 0
    images_used: int = 0
    usage_reset_at: datetime

    last_event_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None

    @property
    def monthly_unit_limit(self) -> UnitLimits:
        return UnitLimits(recipes=self.recipe_limit, images=self.image_limit)

    @property
    def units_used_this_period(self) -> UnitLimits:
        return UnitLimits(recipes=self.recipes_used, images=self.images_used)


class PseudoIdentityRecord(BaseModel):
    """Anonymous identity keyed by a client-generated token (recipes only)."""
    model_config = ConfigDict(frozen=True)

    pseudo_id: str
    fingerprint: Optional[str] = None
    recipes_used: int = 0
    recipe_limit: int
    usage_reset_at: datetime


class SubscriptionDelta(BaseModel):
    """
    Terminal provider state to SET on a record.

    Carries absolute values only (never increments), so applying the same
    delta twice yields the same record. Fields left as None are not written,
    except linkage of other providers which a provider switch clears.
    """
    model_config = ConfigDict(frozen=True)

    status: Optional[EntitlementStatus] = None
    tier: Optional[Tier] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    renew_at: Optional[datetime] = None
    linkage: Dict[str, Optional[str]] = {}
    occurred_at: Optional[datetime] = None
