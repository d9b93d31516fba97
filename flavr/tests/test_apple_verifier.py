"""
Apple verifyReceipt tests (httpx.MockTransport).
"""
import json
from datetime import timedelta

import httpx
import pytest

from flavr.features.billing.apple_provider import AppleVerifier, latest_transaction
from flavr.features.billing.provider import VerificationUnknownError
from flavr.features.entitlements import store
from flavr.features.entitlements.service import ReconcileOutcome, ReconciliationEngine
from flavr.models.entitlement import EntitlementStatus, Provider, SubscriptionDelta, Tier


PRODUCTION = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX = "https://sandbox.itunes.apple.com/verifyReceipt"


def _ms(dt) -> str:
    return str(int(dt.timestamp() * 1000))


def _ok_body(clock, *, expires_in_days=20, product_id="flavr_plus_monthly", bundle_id="com.flavr.app", **txn_extra):
    txn = {
        "product_id": product_id,
        "original_transaction_id": "1000000111",
        "transaction_id": "1000000222",
        "purchase_date_ms": _ms(clock.now - timedelta(days=10)),
        "expires_date_ms": _ms(clock.now + timedelta(days=expires_in_days)),
        "is_trial_period": "false",
    }
    txn.update(txn_extra)
    return {"status": 0, "receipt": {"bundle_id": bundle_id}, "latest_receipt_info": [txn]}


def _verifier(clock, handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return AppleVerifier(shared_secret="apple-shared-secret", client=client, now_fn=clock)


def test_active_receipt(provider_settings, clock):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=_ok_body(clock))

    result = _verifier(clock, handler).verify("receipt-blob")

    assert seen[0]["receipt-data"] == "receipt-blob"
    assert seen[0]["password"] == "apple-shared-secret"
    assert result.active is True
    assert result.status == EntitlementStatus.ACTIVE
    assert result.tier == Tier.MONTHLY
    assert result.linkage == {
        "apple_original_transaction_id": "1000000111",
        "apple_receipt_blob": "receipt-blob",
    }


def test_sandbox_receipt_retried_against_sandbox(provider_settings, clock):
    urls = []

    def handler(request):
        urls.append(str(request.url))
        if str(request.url) == PRODUCTION:
            return httpx.Response(200, json={"status": 21007})
        return httpx.Response(200, json=_ok_body(clock, product_id="flavr_plus_annual"))

    result = _verifier(clock, handler).verify("receipt-blob")

    assert urls == [PRODUCTION, SANDBOX]
    assert result.active is True
    assert result.tier == Tier.ANNUAL


@pytest.mark.parametrize("status", [21002, 21003, 21005, 21010])
def test_non_zero_status_is_unknown(provider_settings, clock, status):
    def handler(request):
        return httpx.Response(200, json={"status": status})

    with pytest.raises(VerificationUnknownError):
        _verifier(clock, handler).verify("receipt-blob")


def test_http_error_is_unknown(provider_settings, clock):
    def handler(request):
        return httpx.Response(503, text="Service Unavailable")

    with pytest.raises(VerificationUnknownError):
        _verifier(clock, handler).verify("receipt-blob")


def test_timeout_is_unknown(provider_settings, clock):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(VerificationUnknownError, match="timed out"):
        _verifier(clock, handler).verify("receipt-blob")


def test_expired_receipt_is_definitive_inactive(provider_settings, clock):
    def handler(request):
        return httpx.Response(200, json=_ok_body(clock, expires_in_days=-1))

    result = _verifier(clock, handler).verify("receipt-blob")
    assert result.active is False
    assert result.status == EntitlementStatus.INACTIVE
    assert result.tier == Tier.FREE


def test_refunded_transaction_is_canceled(provider_settings, clock):
    def handler(request):
        return httpx.Response(200, json=_ok_body(clock, cancellation_date_ms=_ms(clock.now)))

    result = _verifier(clock, handler).verify("receipt-blob")
    assert result.active is False
    assert result.status == EntitlementStatus.CANCELED


def test_trial_period_is_trialing(provider_settings, clock):
    def handler(request):
        return httpx.Response(200, json=_ok_body(clock, is_trial_period="true"))

    result = _verifier(clock, handler).verify("receipt-blob")
    assert result.status == EntitlementStatus.TRIALING
    assert result.active is True


def test_foreign_bundle_is_inactive(provider_settings, clock):
    def handler(request):
        return httpx.Response(200, json=_ok_body(clock, bundle_id="com.other.app"))

    result = _verifier(clock, handler).verify("receipt-blob")
    assert result.active is False
    assert result.raw_status == "bundle_mismatch"


def test_latest_transaction_picks_furthest_expiry():
    txns = [
        {"original_transaction_id": "a", "expires_date_ms": "1000"},
        {"original_transaction_id": "b", "expires_date_ms": "3000"},
        {"original_transaction_id": "c", "expires_date_ms": "2000"},
        {"original_transaction_id": "consumable"},
    ]
    assert latest_transaction(txns)["original_transaction_id"] == "b"
    assert latest_transaction([]) is None


@pytest.mark.parametrize("expires_date_ms", ["not-a-number", "1.5e12x", ["123"]])
def test_malformed_expiry_is_unknown(provider_settings, clock, expires_date_ms):
    def handler(request):
        return httpx.Response(200, json=_ok_body(clock, expires_date_ms=expires_date_ms))

    with pytest.raises(VerificationUnknownError, match="Malformed receipt info"):
        _verifier(clock, handler).verify("receipt-blob")


def test_malformed_receipt_leaves_linked_user_entitled(provider_settings, clock):
    def handler(request):
        return httpx.Response(200, json=_ok_body(clock, expires_date_ms="not-a-number"))

    engine = ReconciliationEngine(verifiers={Provider.APPLE: _verifier(clock, handler)}, now_fn=clock)
    before = engine.apply_provider_event(
        "42",
        Provider.APPLE,
        SubscriptionDelta(
            status=EntitlementStatus.ACTIVE,
            tier=Tier.MONTHLY,
            period_end=clock.now + timedelta(days=5),
            linkage={"apple_original_transaction_id": "1000000111", "apple_receipt_blob": "receipt-blob"},
            occurred_at=clock.now,
        ),
    )

    assert engine.reconcile_one("42") == ReconcileOutcome.UNKNOWN
    after = store.get_record("42")
    assert after.status == EntitlementStatus.ACTIVE
    assert after.has_entitlement is True
    assert after.period_end == before.period_end
