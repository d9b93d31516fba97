"""
Webhook ingestion.

Per provider:
1. Authenticate the delivery (signature / shared secret / push token)
2. Parse into a typed event (billing/events.py)
3. Associate a user
4. Hand terminal state to the reconciliation engine

Idempotency comes from the engine's absolute-SET writes, so redelivered
events are simply applied again. Unassociated events are acknowledged so the
provider stops redelivering them.
"""
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
from sqlalchemy.exc import OperationalError

from flavr.core.config import settings
from flavr.core.errors import WebhookConfigurationError, WebhookSignatureError
from flavr.core.logging import log_event
from flavr.features.billing.events import (
    AppleNotificationEvent,
    GOOGLE_SUBSCRIPTION_REVOKED,
    GoogleNotificationEvent,
    IgnoredEvent,
    ProviderEvent,
    StripeCheckoutCompletedEvent,
    StripeInvoiceEvent,
    StripeSubscriptionEvent,
    parse_apple_notification,
    parse_google_push,
    parse_stripe_event,
)
from flavr.features.billing.provider import BillingWebhookError
from flavr.features.billing.stripe_provider import construct_stripe_event
from flavr.features.entitlements import store as entitlement_store
from flavr.features.entitlements.service import ReconciliationEngine, delta_from_result, get_engine
from flavr.models.entitlement import EntitlementStatus, Provider, SubscriptionDelta, Tier


logger = logging.getLogger(__name__)

T = TypeVar("T")

DATASTORE_RETRY_ATTEMPTS = 3


@dataclass(frozen=True)
class WebhookOutcome:
    provider: str
    event_type: str
    outcome: str  # applied, reconciled, ignored, unassociated, stale
    user_id: Optional[str] = None
    detail: Optional[str] = None


def _compute_backoff(attempt: int, base_seconds: float = 0.1) -> float:
    """Exponential backoff capped at 2s."""
    return min(base_seconds * (2 ** attempt), 2.0)


def with_datastore_retry(
    fn: Callable[[], T],
    attempts: int = DATASTORE_RETRY_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run fn, retrying transient datastore errors; the last error propagates."""
    for attempt in range(attempts):
        try:
            return fn()
        except OperationalError as e:
            if attempt == attempts - 1:
                raise
            delay = _compute_backoff(attempt)
            logger.warning(
                "[billing] datastore error, retrying",
                extra={"attempt": attempt + 1, "delay_seconds": delay, "error": str(e)},
            )
            sleep(delay)
    raise RuntimeError("unreachable")


def _resolve_stripe_user(hint: Optional[str], subscription_id: Optional[str], customer_id: Optional[str]) -> Optional[str]:
    if hint:
        return hint
    return (
        entitlement_store.find_user_id_by_linkage("stripe_subscription_id", subscription_id)
        or entitlement_store.find_user_id_by_linkage("stripe_customer_id", customer_id)
    )


def _stripe_linkage(subscription_id: Optional[str], customer_id: Optional[str]) -> Dict[str, Optional[str]]:
    linkage = {}
    if subscription_id:
        linkage["stripe_subscription_id"] = subscription_id
    if customer_id:
        linkage["stripe_customer_id"] = customer_id
    return linkage


def _unassociated(provider: str, event_type: str, **extra) -> WebhookOutcome:
    log_event(
        "warning",
        "[billing] webhook event has no associated user",
        provider=provider,
        event_type=event_type,
        extra={"outcome": "unassociated", **extra},
    )
    return WebhookOutcome(provider=provider, event_type=event_type, outcome="unassociated")


def _applied(provider: str, event_type: str, user_id: str, record) -> WebhookOutcome:
    return WebhookOutcome(
        provider=provider,
        event_type=event_type,
        outcome="applied",
        user_id=user_id,
        detail=record.status.value if record else None,
    )


def handle_stripe_event(event: ProviderEvent, engine: ReconciliationEngine) -> WebhookOutcome:
    if isinstance(event, IgnoredEvent):
        return WebhookOutcome(provider="stripe", event_type=event.event_type, outcome="ignored", detail=event.reason)

    user_id = _resolve_stripe_user(event.user_id_hint, event.subscription_id, event.customer_id)
    event_type = getattr(event, "event_type", "checkout.session.completed")
    if not user_id:
        return _unassociated("stripe", event_type, subscription_id=event.subscription_id)

    linkage = _stripe_linkage(event.subscription_id, event.customer_id)

    if isinstance(event, StripeSubscriptionEvent):
        delta = delta_from_result(event.result, occurred_at=event.occurred_at)
        delta = delta.model_copy(update={"linkage": linkage})
    elif isinstance(event, StripeInvoiceEvent):
        if event.paid:
            delta = SubscriptionDelta(
                status=EntitlementStatus.ACTIVE,
                tier=event.tier or Tier.MONTHLY,
                period_start=event.period_start,
                period_end=event.period_end,
                renew_at=event.period_end,
                linkage=linkage,
                occurred_at=event.occurred_at,
            )
        else:
            delta = SubscriptionDelta(
                status=EntitlementStatus.PAST_DUE,
                tier=event.tier,
                linkage=linkage,
                occurred_at=event.occurred_at,
            )
    elif isinstance(event, StripeCheckoutCompletedEvent):
        if not linkage:
            return _unassociated("stripe", event_type, user_id=user_id)
        delta = SubscriptionDelta(linkage=linkage, occurred_at=event.occurred_at)
    else:
        raise BillingWebhookError(f"Unsupported Stripe event: {type(event).__name__}")

    record = engine.apply_provider_event(user_id, Provider.STRIPE, delta)
    return _applied("stripe", event_type, user_id, record)


def process_stripe_webhook(
    headers: Dict[str, str],
    body: bytes,
    engine: Optional[ReconciliationEngine] = None,
) -> WebhookOutcome:
    """
    Verify, parse and apply a Stripe webhook.

    Raises:
        WebhookConfigurationError: STRIPE_WEBHOOK_SECRET not configured
        WebhookSignatureError: signature missing/invalid or body not JSON
    """
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise WebhookConfigurationError("STRIPE_WEBHOOK_SECRET not configured; webhook rejected")

    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
    try:
        raw_event = construct_stripe_event(body, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Invalid signature: {e}")
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}")

    event = parse_stripe_event(raw_event)
    return handle_stripe_event(event, engine or get_engine())


def _apple_secret_matches(supplied: Any, secret: str) -> bool:
    if not isinstance(supplied, str):
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8"))


def handle_apple_event(event: ProviderEvent, engine: ReconciliationEngine) -> WebhookOutcome:
    if isinstance(event, IgnoredEvent):
        return WebhookOutcome(provider="apple", event_type=event.event_type, outcome="ignored", detail=event.reason)
    if not isinstance(event, AppleNotificationEvent):
        raise BillingWebhookError(f"Unsupported Apple event: {type(event).__name__}")

    user_id = entitlement_store.find_user_id_by_linkage(
        "apple_original_transaction_id", event.original_transaction_id
    )
    if not user_id:
        return _unassociated("apple", event.notification_type, original_transaction_id=event.original_transaction_id)

    delta = delta_from_result(event.result, occurred_at=event.occurred_at)
    record = engine.apply_provider_event(user_id, Provider.APPLE, delta)
    return _applied("apple", event.notification_type, user_id, record)


def process_apple_webhook(body: bytes, engine: Optional[ReconciliationEngine] = None) -> WebhookOutcome:
    """App Store server notification (v1); authenticated by the shared secret in the body."""
    secret = settings.APPLE_SHARED_SECRET
    if not secret:
        raise WebhookConfigurationError("APPLE_SHARED_SECRET not configured; webhook rejected")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}")
    if not isinstance(payload, dict) or not _apple_secret_matches(payload.get("password"), secret):
        raise WebhookSignatureError("Apple notification password mismatch")

    active_engine = engine or get_engine()
    event = parse_apple_notification(payload, active_engine.now())
    return handle_apple_event(event, active_engine)


def handle_google_event(event: ProviderEvent, engine: ReconciliationEngine) -> WebhookOutcome:
    if isinstance(event, IgnoredEvent):
        return WebhookOutcome(provider="google", event_type=event.event_type, outcome="ignored", detail=event.reason)
    if not isinstance(event, GoogleNotificationEvent):
        raise BillingWebhookError(f"Unsupported Google event: {type(event).__name__}")

    event_type = str(event.notification_type)
    user_id = entitlement_store.find_user_id_by_linkage("google_purchase_token", event.ref.purchase_token)
    if not user_id:
        return _unassociated("google", event_type, product_id=event.ref.product_id)

    if event.is_terminal:
        status = (
            EntitlementStatus.CANCELED
            if event.notification_type == GOOGLE_SUBSCRIPTION_REVOKED
            else EntitlementStatus.INACTIVE
        )
        delta = SubscriptionDelta(
            status=status,
            tier=Tier.FREE,
            linkage={
                "google_purchase_token": event.ref.purchase_token,
                "google_product_id": event.ref.product_id,
            },
            occurred_at=event.occurred_at,
        )
        record = engine.apply_provider_event(user_id, Provider.GOOGLE, delta)
        return _applied("google", event_type, user_id, record)

    # Non-terminal notifications carry no expiry; ask Play for the current state
    outcome = engine.reconcile_one(user_id)
    return WebhookOutcome(
        provider="google",
        event_type=event_type,
        outcome="reconciled",
        user_id=user_id,
        detail=outcome.value,
    )


def process_google_webhook(
    body: bytes,
    token: Optional[str],
    engine: Optional[ReconciliationEngine] = None,
) -> WebhookOutcome:
    """Play real-time developer notification delivered by Pub/Sub push."""
    expected = settings.GOOGLE_WEBHOOK_TOKEN
    if not expected:
        raise WebhookConfigurationError("GOOGLE_WEBHOOK_TOKEN not configured; webhook rejected")
    if not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookSignatureError("Invalid push token")

    try:
        envelope = json.loads(body)
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}")

    event = parse_google_push(envelope, expected_package=settings.GOOGLE_PLAY_PACKAGE_NAME)
    return handle_google_event(event, engine or get_engine())
