"""
Typed provider events.

Webhook bodies are parsed here, once, into frozen dataclasses. Everything
downstream (billing/service.py, the reconciliation engine) works with these
types only; raw provider JSON never leaves this module.

Parsers expect payloads whose authenticity has already been checked.
"""
import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from flavr.features.billing.apple_provider import latest_transaction, result_from_receipt_info
from flavr.features.billing.provider import BillingWebhookError, GooglePurchaseRef, VerificationResult
from flavr.features.billing.stripe_provider import from_timestamp, result_from_subscription
from flavr.models.entitlement import Tier


STRIPE_SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}
STRIPE_INVOICE_PAID_EVENTS = {"invoice.paid", "invoice.payment_succeeded"}
STRIPE_INVOICE_FAILED_EVENTS = {"invoice.payment_failed"}
STRIPE_CHECKOUT_COMPLETED = "checkout.session.completed"

# Play real-time developer notification types
GOOGLE_SUBSCRIPTION_RECOVERED = 1
GOOGLE_SUBSCRIPTION_RENEWED = 2
GOOGLE_SUBSCRIPTION_CANCELED = 3
GOOGLE_SUBSCRIPTION_PURCHASED = 4
GOOGLE_SUBSCRIPTION_ON_HOLD = 5
GOOGLE_SUBSCRIPTION_IN_GRACE_PERIOD = 6
GOOGLE_SUBSCRIPTION_RESTARTED = 7
GOOGLE_SUBSCRIPTION_REVOKED = 12
GOOGLE_SUBSCRIPTION_EXPIRED = 13
GOOGLE_TERMINAL_NOTIFICATIONS = frozenset({GOOGLE_SUBSCRIPTION_REVOKED, GOOGLE_SUBSCRIPTION_EXPIRED})


@dataclass(frozen=True)
class StripeSubscriptionEvent:
    event_id: str
    event_type: str
    occurred_at: Optional[datetime]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_id_hint: Optional[str]
    result: VerificationResult


@dataclass(frozen=True)
class StripeInvoiceEvent:
    event_id: str
    event_type: str
    occurred_at: Optional[datetime]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_id_hint: Optional[str]
    paid: bool
    tier: Optional[Tier]
    period_start: Optional[datetime]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class StripeCheckoutCompletedEvent:
    event_id: str
    occurred_at: Optional[datetime]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_id_hint: Optional[str]


@dataclass(frozen=True)
class AppleNotificationEvent:
    notification_type: str
    occurred_at: Optional[datetime]
    original_transaction_id: Optional[str]
    result: VerificationResult


@dataclass(frozen=True)
class GoogleNotificationEvent:
    notification_type: int
    occurred_at: Optional[datetime]
    ref: GooglePurchaseRef

    @property
    def is_terminal(self) -> bool:
        return self.notification_type in GOOGLE_TERMINAL_NOTIFICATIONS


@dataclass(frozen=True)
class IgnoredEvent:
    provider: str
    event_type: str
    reason: str


ProviderEvent = Union[
    StripeSubscriptionEvent,
    StripeInvoiceEvent,
    StripeCheckoutCompletedEvent,
    AppleNotificationEvent,
    GoogleNotificationEvent,
    IgnoredEvent,
]


def _user_hint(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    hint = metadata.get("userId") or metadata.get("user_id") or obj.get("client_reference_id")
    return str(hint) if hint else None


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        return _id_of(invoice["subscription"])
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _id_of(details.get("subscription"))


def _invoice_user_hint(invoice: Dict[str, Any]) -> Optional[str]:
    hint = _user_hint(invoice)
    if hint:
        return hint
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _user_hint(details) or _user_hint(invoice.get("subscription_details") or {})


def _invoice_period(invoice: Dict[str, Any]):
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    return from_timestamp(period.get("start")), from_timestamp(period.get("end"))


def _invoice_tier(invoice: Dict[str, Any]) -> Optional[Tier]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    price = lines[0].get("price") or {}
    interval = (price.get("recurring") or {}).get("interval")
    if interval is None:
        return None
    return Tier.ANNUAL if interval == "year" else Tier.MONTHLY


def parse_stripe_event(event: Dict[str, Any]) -> ProviderEvent:
    """Verified Stripe event dict -> typed event."""
    if not isinstance(event, dict) or "type" not in event:
        raise BillingWebhookError("Stripe event missing type")

    event_type = event["type"]
    event_id = event.get("id") or ""
    occurred_at = from_timestamp(event.get("created"))
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in STRIPE_SUBSCRIPTION_EVENTS:
        return StripeSubscriptionEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            subscription_id=obj.get("id"),
            customer_id=_id_of(obj.get("customer")),
            user_id_hint=_user_hint(obj),
            result=result_from_subscription(obj),
        )

    if event_type in STRIPE_INVOICE_PAID_EVENTS or event_type in STRIPE_INVOICE_FAILED_EVENTS:
        subscription_id = _invoice_subscription_id(obj)
        if not subscription_id:
            return IgnoredEvent(provider="stripe", event_type=event_type, reason="invoice without subscription")
        period_start, period_end = _invoice_period(obj)
        return StripeInvoiceEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            subscription_id=subscription_id,
            customer_id=_id_of(obj.get("customer")),
            user_id_hint=_invoice_user_hint(obj),
            paid=event_type in STRIPE_INVOICE_PAID_EVENTS,
            tier=_invoice_tier(obj),
            period_start=period_start,
            period_end=period_end,
        )

    if event_type == STRIPE_CHECKOUT_COMPLETED:
        if obj.get("mode") not in (None, "subscription"):
            return IgnoredEvent(provider="stripe", event_type=event_type, reason="non-subscription checkout")
        return StripeCheckoutCompletedEvent(
            event_id=event_id,
            occurred_at=occurred_at,
            subscription_id=_id_of(obj.get("subscription")),
            customer_id=_id_of(obj.get("customer")),
            user_id_hint=_user_hint(obj),
        )

    return IgnoredEvent(provider="stripe", event_type=event_type, reason="unhandled event type")


def _ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def parse_apple_notification(body: Dict[str, Any], now: datetime) -> ProviderEvent:
    """App Store server notification (v1) -> typed event."""
    if not isinstance(body, dict):
        raise BillingWebhookError("Apple notification must be a JSON object")

    notification_type = body.get("notification_type") or "UNKNOWN"
    unified = body.get("unified_receipt") or {}
    receipt_info = unified.get("latest_receipt_info")
    try:
        latest = latest_transaction(receipt_info)
        if latest is None:
            return IgnoredEvent(provider="apple", event_type=notification_type, reason="no subscription transaction")

        # v1 notifications carry no event time; the newest transaction date orders them
        candidates = [_ms(latest.get(k)) for k in ("purchase_date_ms", "cancellation_date_ms")]
        occurred_at = max((c for c in candidates if c is not None), default=None)
        result = result_from_receipt_info(receipt_info, now, receipt_blob=unified.get("latest_receipt"))
    except (ValueError, TypeError, AttributeError) as e:
        raise BillingWebhookError(f"Malformed latest_receipt_info: {e}")

    return AppleNotificationEvent(
        notification_type=notification_type,
        occurred_at=occurred_at,
        original_transaction_id=latest.get("original_transaction_id"),
        result=result,
    )


def parse_google_push(envelope: Dict[str, Any], expected_package: Optional[str] = None) -> ProviderEvent:
    """Pub/Sub push envelope carrying a Play developer notification -> typed event."""
    message = (envelope or {}).get("message") or {}
    data = message.get("data")
    if not data:
        raise BillingWebhookError("Pub/Sub message has no data")
    try:
        notification = json.loads(base64.b64decode(data))
    except (ValueError, TypeError) as e:
        raise BillingWebhookError(f"Pub/Sub data is not base64 JSON: {e}")
    if not isinstance(notification, dict):
        raise BillingWebhookError("Developer notification must be a JSON object")

    if notification.get("testNotification"):
        return IgnoredEvent(provider="google", event_type="test", reason="test notification")

    package_name = notification.get("packageName")
    if expected_package and package_name != expected_package:
        return IgnoredEvent(provider="google", event_type="subscription", reason=f"foreign package {package_name}")

    sub = notification.get("subscriptionNotification")
    if not sub:
        return IgnoredEvent(provider="google", event_type="other", reason="not a subscription notification")

    try:
        notification_type = int(sub.get("notificationType"))
    except (TypeError, ValueError):
        raise BillingWebhookError("subscriptionNotification.notificationType missing")
    if not sub.get("purchaseToken") or not sub.get("subscriptionId"):
        raise BillingWebhookError("subscriptionNotification missing purchaseToken or subscriptionId")

    try:
        occurred_at = _ms(notification.get("eventTimeMillis"))
    except (TypeError, ValueError):
        raise BillingWebhookError("eventTimeMillis is not a millisecond timestamp")

    return GoogleNotificationEvent(
        notification_type=notification_type,
        occurred_at=occurred_at,
        ref=GooglePurchaseRef(product_id=sub["subscriptionId"], purchase_token=sub["purchaseToken"]),
    )
