"""
Stripe verifier tests.

stripe.Subscription.retrieve is patched; no network calls are made.
"""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import stripe

from flavr.features.billing.provider import BillingProviderError, VerificationUnknownError
from flavr.features.billing.stripe_provider import (
    StripeVerifier,
    map_stripe_status,
    result_from_subscription,
)
from flavr.models.entitlement import EntitlementStatus, Tier


PERIOD_START = 1_740_000_000
PERIOD_END = 1_742_592_000


def _subscription(status="active", interval="month", on_items=False):
    sub = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_456",
        "status": status,
        "items": {
            "data": [
                {
                    "price": {"id": "price_1", "product": "prod_plus", "recurring": {"interval": interval}},
                }
            ]
        },
    }
    if on_items:
        sub["items"]["data"][0]["current_period_start"] = PERIOD_START
        sub["items"]["data"][0]["current_period_end"] = PERIOD_END
    else:
        sub["current_period_start"] = PERIOD_START
        sub["current_period_end"] = PERIOD_END
    return sub


@pytest.fixture
def verifier():
    return StripeVerifier(secret_key="sk_test_123", timeout=2.0)


def test_requires_secret_key(monkeypatch):
    from flavr.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    with pytest.raises(BillingProviderError):
        StripeVerifier()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("active", EntitlementStatus.ACTIVE),
        ("trialing", EntitlementStatus.TRIALING),
        ("past_due", EntitlementStatus.PAST_DUE),
        ("unpaid", EntitlementStatus.PAST_DUE),
        ("canceled", EntitlementStatus.CANCELED),
        ("incomplete", EntitlementStatus.INCOMPLETE),
        ("incomplete_expired", EntitlementStatus.INACTIVE),
        ("something_new", EntitlementStatus.INACTIVE),
    ],
)
def test_status_mapping(raw, expected):
    assert map_stripe_status(raw) == expected


def test_active_subscription(verifier):
    with patch("stripe.Subscription.retrieve", return_value=_subscription()) as retrieve:
        result = verifier.verify("sub_123")

    retrieve.assert_called_once_with("sub_123")
    assert result.active is True
    assert result.status == EntitlementStatus.ACTIVE
    assert result.tier == Tier.MONTHLY
    assert result.expires_at == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
    assert result.period_start == datetime.fromtimestamp(PERIOD_START, tz=timezone.utc)
    assert result.linkage == {"stripe_subscription_id": "sub_123", "stripe_customer_id": "cus_456"}


def test_period_read_from_items_when_absent_on_subscription():
    result = result_from_subscription(_subscription(interval="year", on_items=True))
    assert result.tier == Tier.ANNUAL
    assert result.expires_at == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


def test_canceled_subscription_drops_to_free(verifier):
    with patch("stripe.Subscription.retrieve", return_value=_subscription(status="canceled")):
        result = verifier.verify("sub_123")
    assert result.active is False
    assert result.status == EntitlementStatus.CANCELED
    assert result.tier == Tier.FREE


def test_missing_subscription_is_definitive(verifier):
    error = stripe.InvalidRequestError("No such subscription: 'sub_123'", "id", code="resource_missing")
    with patch("stripe.Subscription.retrieve", side_effect=error):
        result = verifier.verify("sub_123")
    assert result.active is False
    assert result.status == EntitlementStatus.CANCELED


def test_other_invalid_request_is_unknown(verifier):
    error = stripe.InvalidRequestError("Bad parameter", "id", code="parameter_invalid")
    with patch("stripe.Subscription.retrieve", side_effect=error):
        with pytest.raises(VerificationUnknownError):
            verifier.verify("sub_123")


def test_network_error_is_unknown(verifier):
    with patch("stripe.Subscription.retrieve", side_effect=stripe.APIConnectionError("connection reset")):
        with pytest.raises(VerificationUnknownError) as excinfo:
            verifier.verify("sub_123")
    assert excinfo.value.provider == "stripe"
