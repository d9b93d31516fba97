"""
Stripe subscription verifier and webhook authentication.

Uses the stripe SDK for subscription retrieval and for signature checks of
webhook payloads (raw body + Stripe-Signature header). Parsing of verified
events into typed events lives in billing/events.py.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import logging

import stripe

from flavr.core.config import settings
from flavr.features.billing.provider import (
    BillingProviderError,
    VerificationResult,
    VerificationUnknownError,
)
from flavr.models.entitlement import ENTITLED_STATUSES, EntitlementStatus, Tier


logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.TRIALING,
    "past_due": EntitlementStatus.PAST_DUE,
    "unpaid": EntitlementStatus.PAST_DUE,
    "canceled": EntitlementStatus.CANCELED,
    "incomplete": EntitlementStatus.INCOMPLETE,
    "incomplete_expired": EntitlementStatus.INACTIVE,
    "paused": EntitlementStatus.INACTIVE,
}


def map_stripe_status(raw_status: Optional[str]) -> EntitlementStatus:
    return STRIPE_STATUS_MAP.get(raw_status or "", EntitlementStatus.INACTIVE)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (plain dicts pass through)."""
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """(period_start, period_end); newer API versions only carry these on items."""
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def subscription_tier(subscription: Dict[str, Any]) -> Tier:
    price = _first_item(subscription).get("price") or {}
    recurring = price.get("recurring") or {}
    if recurring.get("interval") == "year":
        return Tier.ANNUAL
    return Tier.MONTHLY


def subscription_product_id(subscription: Dict[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product or price.get("id")


def result_from_subscription(subscription: Dict[str, Any]) -> VerificationResult:
    """Normalize a subscription object (retrieved or from a webhook) into a result."""
    raw_status = subscription.get("status") or ""
    status = map_stripe_status(raw_status)
    period_start, period_end = subscription_period(subscription)
    active = status in ENTITLED_STATUSES
    return VerificationResult(
        active=active,
        expires_at=period_end,
        raw_status=raw_status,
        status=status,
        tier=subscription_tier(subscription) if active or status == EntitlementStatus.PAST_DUE else Tier.FREE,
        product_id=subscription_product_id(subscription),
        period_start=period_start,
        linkage={
            "stripe_subscription_id": subscription.get("id"),
            "stripe_customer_id": subscription.get("customer"),
        },
    )


class StripeVerifier:
    """Answers subscription state by retrieving the subscription by id."""

    def __init__(self, secret_key: Optional[str] = None, timeout: Optional[float] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS)

    def verify(self, subscription_id: str) -> VerificationResult:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                # Deleted subscriptions are gone for good
                logger.info(
                    "[stripe] subscription not found",
                    extra={"provider": "stripe", "subscription_id": subscription_id},
                )
                return VerificationResult(
                    active=False,
                    expires_at=None,
                    raw_status="resource_missing",
                    status=EntitlementStatus.CANCELED,
                    tier=Tier.FREE,
                )
            raise VerificationUnknownError(f"Stripe subscription retrieve failed: {e}", provider="stripe")
        except stripe.StripeError as e:
            raise VerificationUnknownError(f"Stripe subscription retrieve failed: {e}", provider="stripe")

        return result_from_subscription(_as_dict(subscription))


def construct_stripe_event(payload: bytes, sig_header: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the raw body, then parse JSON.

    Raises:
        stripe.SignatureVerificationError: missing or invalid signature
        ValueError: body is not JSON
    """
    if not sig_header:
        raise stripe.SignatureVerificationError("Missing stripe-signature header", sig_header, payload)
    stripe.WebhookSignature.verify_header(
        payload.decode("utf-8") if isinstance(payload, bytes) else payload,
        sig_header,
        secret,
        stripe.Webhook.DEFAULT_TOLERANCE,
    )
    return json.loads(payload)
