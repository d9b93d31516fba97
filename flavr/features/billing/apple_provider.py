"""
Apple App Store receipt verifier.

POSTs the stored receipt to verifyReceipt (production first). Status 21007
means the receipt belongs to the sandbox, so the same request is retried once
against the sandbox URL. Status 0 is the only definitive answer; every other
status, HTTP error, timeout or malformed body is "unknown".
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

import httpx

from flavr.core.config import settings
from flavr.features.billing.provider import (
    BillingProviderError,
    VerificationResult,
    VerificationUnknownError,
)
from flavr.models.entitlement import EntitlementStatus, Tier, tier_from_product_id


logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _from_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def latest_transaction(receipt_info: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """Subscription transaction with the furthest expires_date_ms."""
    transactions = [t for t in (receipt_info or []) if t.get("expires_date_ms")]
    if not transactions:
        return None
    return max(transactions, key=lambda t: int(t["expires_date_ms"]))


def result_from_receipt_info(
    receipt_info: Optional[List[Dict[str, Any]]],
    now: datetime,
    receipt_blob: Optional[str] = None,
) -> VerificationResult:
    """Definitive state from latest_receipt_info (verifyReceipt or a notification)."""
    latest = latest_transaction(receipt_info)
    if latest is None:
        return VerificationResult(
            active=False,
            expires_at=None,
            raw_status="no_subscription",
            status=EntitlementStatus.INACTIVE,
            tier=Tier.FREE,
        )

    expires_at = _from_ms(latest.get("expires_date_ms"))
    canceled = bool(latest.get("cancellation_date_ms") or latest.get("cancellation_date"))
    active = not canceled and expires_at is not None and now < expires_at
    product_id = latest.get("product_id")

    if active:
        trial = str(latest.get("is_trial_period", "false")).lower() == "true"
        status = EntitlementStatus.TRIALING if trial else EntitlementStatus.ACTIVE
        tier = tier_from_product_id(product_id)
    else:
        status = EntitlementStatus.CANCELED if canceled else EntitlementStatus.INACTIVE
        tier = Tier.FREE

    linkage = {"apple_original_transaction_id": latest.get("original_transaction_id")}
    if receipt_blob:
        linkage["apple_receipt_blob"] = receipt_blob

    return VerificationResult(
        active=active,
        expires_at=expires_at,
        raw_status="canceled" if canceled else ("active" if active else "expired"),
        status=status,
        tier=tier,
        product_id=product_id,
        period_start=_from_ms(latest.get("purchase_date_ms")),
        linkage=linkage,
    )


class AppleVerifier:
    """Verifies auto-renewable subscription receipts with verifyReceipt."""

    def __init__(
        self,
        shared_secret: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        now_fn: Callable[[], datetime] = _utc_now,
    ):
        self.shared_secret = shared_secret or settings.APPLE_SHARED_SECRET
        if not self.shared_secret:
            raise BillingProviderError("APPLE_SHARED_SECRET not configured")
        self.production_url = settings.APPLE_VERIFY_URL_PRODUCTION
        self.sandbox_url = settings.APPLE_VERIFY_URL_SANDBOX
        self.bundle_id = settings.APPLE_BUNDLE_ID
        self.client = client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.now_fn = now_fn

    def _post(self, url: str, receipt_blob: str, environment: str) -> Dict[str, Any]:
        request_data = {
            "receipt-data": receipt_blob,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        try:
            response = self.client.post(url, json=request_data)
        except httpx.TimeoutException:
            raise VerificationUnknownError(f"Apple {environment} verification timed out", provider="apple")
        except httpx.HTTPError as e:
            raise VerificationUnknownError(f"Apple {environment} verification failed: {e}", provider="apple")

        if response.status_code != 200:
            raise VerificationUnknownError(
                f"Apple {environment} returned HTTP {response.status_code}", provider="apple"
            )
        try:
            body = response.json()
        except ValueError:
            raise VerificationUnknownError(f"Invalid JSON response from Apple {environment}", provider="apple")
        if not isinstance(body, dict) or not isinstance(body.get("status"), int):
            raise VerificationUnknownError(f"Malformed response from Apple {environment}", provider="apple")
        return body

    def verify(self, receipt_blob: str) -> VerificationResult:
        body = self._post(self.production_url, receipt_blob, "production")
        if body["status"] == STATUS_SANDBOX_RECEIPT:
            logger.info("[apple] sandbox receipt, retrying against sandbox", extra={"provider": "apple"})
            body = self._post(self.sandbox_url, receipt_blob, "sandbox")

        status = body["status"]
        if status != STATUS_OK:
            raise VerificationUnknownError(f"Apple verifyReceipt status {status}", provider="apple")

        receipt = body.get("receipt") if isinstance(body.get("receipt"), dict) else {}
        if self.bundle_id and receipt.get("bundle_id") and receipt.get("bundle_id") != self.bundle_id:
            logger.warning(
                "[apple] receipt bundle mismatch",
                extra={"provider": "apple", "bundle_id": receipt.get("bundle_id")},
            )
            return VerificationResult(
                active=False,
                expires_at=None,
                raw_status="bundle_mismatch",
                status=EntitlementStatus.INACTIVE,
                tier=Tier.FREE,
            )

        try:
            return result_from_receipt_info(body.get("latest_receipt_info"), self.now_fn(), receipt_blob=receipt_blob)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise VerificationUnknownError(f"Malformed receipt info from Apple: {e}", provider="apple")
