"""
Google Play subscription verifier.

Reads purchases.subscriptions from the Android Publisher API with a bearer
token from the credential exchange. Active iff now < expiryTimeMillis.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote
import logging

import httpx

from flavr.core.config import settings
from flavr.features.billing.provider import (
    GooglePurchaseRef,
    VerificationResult,
    VerificationUnknownError,
)
from flavr.features.credentials.google_auth import CredentialError, GoogleAccessTokenProvider
from flavr.models.entitlement import EntitlementStatus, Tier, tier_from_product_id


logger = logging.getLogger(__name__)

PAYMENT_STATE_FREE_TRIAL = 2


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _from_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


def result_from_purchase(
    purchase: Dict[str, Any],
    ref: GooglePurchaseRef,
    now: datetime,
) -> VerificationResult:
    expires_at = _from_ms(purchase.get("expiryTimeMillis"))
    active = expires_at is not None and now < expires_at

    if active:
        trial = purchase.get("paymentState") == PAYMENT_STATE_FREE_TRIAL
        status = EntitlementStatus.TRIALING if trial else EntitlementStatus.ACTIVE
        tier = tier_from_product_id(ref.product_id)
    else:
        status = EntitlementStatus.CANCELED if purchase.get("cancelReason") is not None else EntitlementStatus.INACTIVE
        tier = Tier.FREE

    linkage = {
        "google_purchase_token": ref.purchase_token,
        "google_product_id": ref.product_id,
    }
    if purchase.get("orderId"):
        linkage["google_order_id"] = purchase["orderId"]

    return VerificationResult(
        active=active,
        expires_at=expires_at,
        raw_status=f"paymentState={purchase.get('paymentState')}",
        status=status,
        tier=tier,
        product_id=ref.product_id,
        period_start=_from_ms(purchase.get("startTimeMillis")),
        linkage=linkage,
    )


class GoogleVerifier:
    """Play Developer API client for subscription purchases."""

    def __init__(
        self,
        token_provider: Optional[GoogleAccessTokenProvider] = None,
        package_name: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        now_fn: Callable[[], datetime] = _utc_now,
    ):
        self.client = client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        self.token_provider = token_provider or GoogleAccessTokenProvider.from_settings(client=self.client)
        self.package_name = package_name or settings.GOOGLE_PLAY_PACKAGE_NAME
        self.api_base = settings.GOOGLE_PLAY_API_BASE.rstrip("/")
        self.now_fn = now_fn

    def _subscription_url(self, ref: GooglePurchaseRef) -> str:
        return (
            f"{self.api_base}/applications/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptions/{quote(ref.product_id, safe='')}"
            f"/tokens/{quote(ref.purchase_token, safe='')}"
        )

    def _auth_headers(self) -> Dict[str, str]:
        try:
            token = self.token_provider.get_token()
        except CredentialError as e:
            raise VerificationUnknownError(f"Google credential exchange failed: {e}", provider="google")
        return {"Authorization": f"Bearer {token}"}

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = self._auth_headers()
        try:
            response = self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException:
            raise VerificationUnknownError("Google Play API request timed out", provider="google")
        except httpx.HTTPError as e:
            raise VerificationUnknownError(f"Google Play API request failed: {e}", provider="google")

        if response.status_code == 401:
            # Token revoked or rotated; next call exchanges a fresh one
            self.token_provider.invalidate()
        return response

    def verify(self, ref: GooglePurchaseRef) -> VerificationResult:
        response = self._request("GET", self._subscription_url(ref))

        if response.status_code == 410:
            # Purchase token expired long ago and was purged
            return VerificationResult(
                active=False,
                expires_at=None,
                raw_status="gone",
                status=EntitlementStatus.INACTIVE,
                tier=Tier.FREE,
                product_id=ref.product_id,
            )
        if response.status_code != 200:
            raise VerificationUnknownError(
                f"Google Play API returned HTTP {response.status_code}", provider="google"
            )
        try:
            purchase = response.json()
        except ValueError:
            raise VerificationUnknownError("Invalid JSON response from Google Play API", provider="google")
        if not isinstance(purchase, dict):
            raise VerificationUnknownError("Malformed response from Google Play API", provider="google")

        try:
            return result_from_purchase(purchase, ref, self.now_fn())
        except (ValueError, TypeError, OverflowError) as e:
            raise VerificationUnknownError(f"Malformed purchase from Google Play API: {e}", provider="google")

    def acknowledge(self, ref: GooglePurchaseRef) -> None:
        """Acknowledge a new purchase (Play refunds unacknowledged ones after 3 days)."""
        response = self._request("POST", f"{self._subscription_url(ref)}:acknowledge", json={})
        if response.status_code not in (200, 204):
            raise VerificationUnknownError(
                f"Google Play acknowledge returned HTTP {response.status_code}", provider="google"
            )
        logger.info(
            "[google] purchase acknowledged",
            extra={"provider": "google", "product_id": ref.product_id},
        )
