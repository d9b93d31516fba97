"""
flavr/features/entitlements/service.py

Reconciliation engine.

Single authority over EntitlementRecord status/tier/period/provider linkage.
Two triggers feed it:
- pushed provider events (webhooks) -> apply_provider_event (absolute SET)
- pull checks (sync job, on-demand) -> reconcile_one (verifier round trip)

Verifier "unknown" never changes state. Datastore errors propagate; the
webhook handler and sync job own retries.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional
import logging

from flavr.core.errors import ValidationError
from flavr.features.billing.provider import (
    BillingProviderError,
    GooglePurchaseRef,
    SubscriptionVerifier,
    VerificationResult,
    VerificationUnknownError,
)
from flavr.features.entitlements import store as entitlement_store
from flavr.models.entitlement import (
    ENTITLED_STATUSES,
    PROVIDER_LINKAGE_FIELDS,
    EntitlementRecord,
    EntitlementStatus,
    Provider,
    SubscriptionDelta,
    Tier,
)


logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    RECONCILED = "reconciled"
    UNCHANGED = "unchanged"
    UNKNOWN = "unknown"
    SKIPPED = "skipped"


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _effective_tier(status: EntitlementStatus, tier: Optional[Tier]) -> Optional[Tier]:
    """Lapsed subscriptions drop to free; past_due keeps its tier until resolved."""
    if status in ENTITLED_STATUSES or status == EntitlementStatus.PAST_DUE:
        return tier
    return Tier.FREE


def delta_from_result(result: VerificationResult, occurred_at: Optional[datetime] = None) -> SubscriptionDelta:
    """Absolute state carried by a definitive verification."""
    return SubscriptionDelta(
        status=result.status,
        tier=result.tier,
        period_start=result.period_start,
        period_end=result.expires_at,
        renew_at=result.expires_at if result.active else None,
        linkage={k: v for k, v in (result.linkage or {}).items() if v},
        occurred_at=occurred_at,
    )


class ReconciliationEngine:
    def __init__(
        self,
        verifiers: Optional[Mapping[Provider, SubscriptionVerifier]] = None,
        store=entitlement_store,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.verifiers: Dict[Provider, SubscriptionVerifier] = dict(verifiers or {})
        self.store = store
        self.now_fn = now_fn

    def now(self) -> datetime:
        return _normalize_now(self.now_fn())

    def _transition_values(self, provider: Provider, delta: SubscriptionDelta) -> Dict[str, Any]:
        allowed = PROVIDER_LINKAGE_FIELDS[provider]
        unknown = set(delta.linkage) - set(allowed)
        if unknown:
            raise ValueError(f"Linkage {sorted(unknown)} does not belong to provider {provider.value}")

        values: Dict[str, Any] = {"provider": provider}
        for other, fields in PROVIDER_LINKAGE_FIELDS.items():
            if other != provider:
                values.update({field: None for field in fields})
        values.update({k: v for k, v in delta.linkage.items() if v})

        if delta.status is not None:
            values["status"] = delta.status
            tier = _effective_tier(delta.status, delta.tier)
            if tier is not None:
                values["tier"] = tier
        elif delta.tier is not None:
            values["tier"] = delta.tier
        for field in ("period_start", "period_end", "renew_at"):
            value = getattr(delta, field)
            if value is not None:
                values[field] = value
        if delta.status is not None and delta.status not in ENTITLED_STATUSES:
            values["renew_at"] = delta.renew_at
        return values

    def apply_provider_event(
        self,
        user_id: str,
        provider: Provider,
        delta: SubscriptionDelta,
    ) -> Optional[EntitlementRecord]:
        """
        SET the record to the delta's terminal values and make provider authoritative.

        Replaying the same delta converges on the same record. A delta older
        than the last applied event is dropped, and so is a non-activating
        delta from a provider other than the authoritative one.

        Returns:
            The record after the write (unchanged if the delta was stale).
        """
        provider = Provider(provider)
        if provider == Provider.NONE:
            raise ValueError("Provider events require a concrete provider")

        now = self.now()
        record = self.store.ensure_record(user_id, now=now)
        if record.provider not in (Provider.NONE, provider) and delta.status not in ENTITLED_STATUSES:
            # Only an activating event moves authority; a lapse of the old provider does not
            logger.info(
                "[entitlement] event from non-authoritative provider ignored",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "authoritative_provider": record.provider.value,
                    "status": delta.status.value if delta.status else None,
                    "outcome": "non_authoritative",
                },
            )
            return record
        has_linkage = any(delta.linkage.get(f) for f in PROVIDER_LINKAGE_FIELDS[provider])
        if not has_linkage and (record.provider != provider or not _has_linkage(record, provider)):
            raise ValueError(f"Event for {provider.value} carries no linkage for user {user_id}")

        values = self._transition_values(provider, delta)
        written = self.store.write_transition(user_id, values, event_at=delta.occurred_at, now=now)
        if not written:
            logger.info(
                "[entitlement] stale event ignored",
                extra={"user_id": user_id, "provider": provider.value, "outcome": "stale"},
            )
        else:
            logger.info(
                "[entitlement] provider event applied",
                extra={
                    "user_id": user_id,
                    "provider": provider.value,
                    "status": delta.status.value if delta.status else None,
                    "previous_provider": record.provider.value,
                },
            )
        return self.store.get_record(user_id)

    def _verifier_ref(self, record: EntitlementRecord):
        if record.provider == Provider.STRIPE:
            return record.stripe_subscription_id
        if record.provider == Provider.APPLE:
            return record.apple_receipt_blob
        if record.provider == Provider.GOOGLE:
            if record.google_product_id and record.google_purchase_token:
                return GooglePurchaseRef(
                    product_id=record.google_product_id,
                    purchase_token=record.google_purchase_token,
                )
        return None

    def reconcile_one(self, user_id: str) -> ReconcileOutcome:
        """Ask the authoritative provider and write the answer if it differs."""
        record = self.store.get_record(user_id)
        if record is None or record.provider == Provider.NONE:
            return ReconcileOutcome.SKIPPED

        ref = self._verifier_ref(record)
        if not ref:
            logger.warning(
                "[reconcile] provider linkage missing",
                extra={"user_id": user_id, "provider": record.provider.value, "outcome": "skipped"},
            )
            return ReconcileOutcome.SKIPPED

        verifier = self.verifiers.get(record.provider)
        if verifier is None:
            logger.warning(
                "[reconcile] no verifier configured",
                extra={"user_id": user_id, "provider": record.provider.value, "outcome": "unknown"},
            )
            return ReconcileOutcome.UNKNOWN

        try:
            result = verifier.verify(ref)
        except VerificationUnknownError as e:
            logger.warning(
                "[reconcile] verification unknown, state preserved",
                extra={"user_id": user_id, "provider": record.provider.value, "outcome": "unknown", "error": str(e)},
            )
            return ReconcileOutcome.UNKNOWN

        new_tier = _effective_tier(result.status, result.tier)
        changed = (
            result.status != record.status
            or result.expires_at != record.period_end
            or (new_tier is not None and new_tier != record.tier)
        )
        now = self.now()
        if not changed:
            # Confirmed state still supersedes pushed events older than this check
            self.store.write_transition(
                user_id, {"last_verified_at": now}, verified_at=now, expected_provider=record.provider, now=now
            )
            return ReconcileOutcome.UNCHANGED

        delta = delta_from_result(result)
        values = self._transition_values(record.provider, delta)
        values["last_verified_at"] = now
        written = self.store.write_transition(
            user_id, values, verified_at=now, expected_provider=record.provider, now=now
        )
        if not written:
            # Provider switched while we were verifying; the newer owner wins
            logger.info(
                "[reconcile] provider changed during verification",
                extra={"user_id": user_id, "provider": record.provider.value, "outcome": "skipped"},
            )
            return ReconcileOutcome.SKIPPED

        logger.info(
            "[reconcile] state updated",
            extra={
                "user_id": user_id,
                "provider": record.provider.value,
                "outcome": "reconciled",
                "previous_status": record.status.value,
                "status": result.status.value,
            },
        )
        return ReconcileOutcome.RECONCILED

    def has_active_entitlement(self, user_id: str) -> bool:
        """Local fast path first; a verifier is only consulted when local state is ambiguous."""
        record = self.store.get_record(user_id)
        if record is None:
            return False
        if record.operator_override:
            return True

        now = self.now()
        if record.status in ENTITLED_STATUSES and record.period_end is not None and record.period_end > now:
            return True
        if record.provider == Provider.NONE:
            return record.has_entitlement

        self.reconcile_one(user_id)
        refreshed = self.store.get_record(user_id)
        return bool(refreshed and refreshed.has_entitlement)

    def link_mobile_purchase(
        self,
        user_id: str,
        provider: Provider,
        *,
        receipt_blob: Optional[str] = None,
        product_id: Optional[str] = None,
        purchase_token: Optional[str] = None,
    ) -> EntitlementRecord:
        """
        Verify an in-app purchase and make its provider authoritative.

        Raises:
            ValidationError: missing purchase data, or purchase owned by another user
            VerificationUnknownError: provider could not answer; nothing written
        """
        provider = Provider(provider)
        if provider == Provider.APPLE:
            if not receipt_blob:
                raise ValidationError("receipt_data is required for Apple purchases")
            ref = receipt_blob
        elif provider == Provider.GOOGLE:
            if not product_id or not purchase_token:
                raise ValidationError("product_id and purchase_token are required for Google purchases")
            ref = GooglePurchaseRef(product_id=product_id, purchase_token=purchase_token)
        else:
            raise ValidationError(f"Unsupported mobile provider: {provider.value}")

        verifier = self.verifiers.get(provider)
        if verifier is None:
            raise VerificationUnknownError(f"{provider.value} verification is not configured", provider=provider.value)

        result = verifier.verify(ref)
        linkage = {k: v for k, v in (result.linkage or {}).items() if v}
        if provider == Provider.APPLE:
            linkage["apple_receipt_blob"] = receipt_blob
        owner_field = "apple_original_transaction_id" if provider == Provider.APPLE else "google_purchase_token"
        owner = self.store.find_user_id_by_linkage(owner_field, linkage.get(owner_field))
        if owner and owner != user_id:
            raise ValidationError("Purchase is already linked to another account")
        if not linkage.get(owner_field):
            raise ValidationError("Receipt contains no subscription purchase")

        if provider == Provider.GOOGLE and result.active:
            try:
                verifier.acknowledge(ref)
            except (VerificationUnknownError, BillingProviderError) as e:
                logger.warning(
                    "[entitlement] purchase acknowledge failed",
                    extra={"user_id": user_id, "provider": "google", "error": str(e)},
                )

        now = self.now()
        self.store.ensure_record(user_id, now=now)
        delta = delta_from_result(result).model_copy(update={"linkage": linkage})
        values = self._transition_values(provider, delta)
        values["last_verified_at"] = now
        self.store.write_transition(user_id, values, verified_at=now, now=now)
        logger.info(
            "[entitlement] mobile purchase linked",
            extra={"user_id": user_id, "provider": provider.value, "status": result.status.value},
        )
        return self.store.get_record(user_id)

    def set_operator_override(self, user_id: str, enabled: bool) -> EntitlementRecord:
        now = self.now()
        self.store.ensure_record(user_id, now=now)
        self.store.set_operator_override(user_id, enabled, now=now)
        logger.info(
            "[entitlement] operator override changed",
            extra={"user_id": user_id, "operator_override": bool(enabled)},
        )
        return self.store.get_record(user_id)

    def get_subscription_details(self, user_id: str) -> Dict[str, Any]:
        record = self.store.get_record(user_id) or self.store.ensure_record(user_id, now=self.now())
        return {
            "user_id": record.user_id,
            "has_entitlement": record.has_entitlement,
            "status": record.status.value,
            "tier": record.tier.value,
            "provider": record.provider.value,
            "operator_override": record.operator_override,
            "period_start": record.period_start,
            "period_end": record.period_end,
            "renew_at": record.renew_at,
            "usage": {
                "recipes_used": record.recipes_used,
                "images_used": record.images_used,
                "recipe_limit": record.recipe_limit,
                "image_limit": record.image_limit,
                "usage_reset_at": record.usage_reset_at,
            },
        }


def _has_linkage(record: EntitlementRecord, provider: Provider) -> bool:
    return any(getattr(record, field) for field in PROVIDER_LINKAGE_FIELDS[provider])


_default_engine: Optional[ReconciliationEngine] = None


def build_verifiers() -> Dict[Provider, SubscriptionVerifier]:
    """
    Construct every verifier whose credentials are configured.

    Raises:
        CredentialError: GOOGLE_SERVICE_ACCOUNT_KEY is set but unusable
    """
    from flavr.core.config import settings
    from flavr.features.billing.apple_provider import AppleVerifier
    from flavr.features.billing.google_provider import GoogleVerifier
    from flavr.features.billing.stripe_provider import StripeVerifier
    from flavr.features.credentials.google_auth import CredentialError

    verifiers: Dict[Provider, SubscriptionVerifier] = {}
    for provider, factory in (
        (Provider.STRIPE, StripeVerifier),
        (Provider.APPLE, AppleVerifier),
        (Provider.GOOGLE, GoogleVerifier),
    ):
        try:
            verifiers[provider] = factory()
        except (BillingProviderError, CredentialError) as e:
            if provider == Provider.GOOGLE and settings.GOOGLE_SERVICE_ACCOUNT_KEY:
                raise
            logger.warning(
                "[entitlement] verifier unavailable",
                extra={"provider": provider.value, "error": str(e)},
            )
    return verifiers


def get_engine() -> ReconciliationEngine:
    global _default_engine
    if _default_engine is None:
        _default_engine = ReconciliationEngine(verifiers=build_verifiers())
    return _default_engine


def set_engine(engine: Optional[ReconciliationEngine]) -> None:
    """Swap the process-wide engine (tests, alternate wiring)."""
    global _default_engine
    _default_engine = engine
