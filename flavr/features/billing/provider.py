"""
Subscription verifier protocol.

Each provider (Stripe, Apple, Google) is wrapped in a verifier that answers
one question for a stored reference: is this subscription active right now,
and until when? Only definitive answers come back as VerificationResult;
anything else raises VerificationUnknownError so callers never mistake an
outage for a lapsed subscription.
"""
from typing import Protocol, Optional, Union
from dataclasses import dataclass
from datetime import datetime

from flavr.models.entitlement import EntitlementStatus, Tier


@dataclass(frozen=True)
class VerificationResult:
    """Definitive provider answer for one subscription."""
    active: bool
    expires_at: Optional[datetime]
    raw_status: str  # provider's own status string, for logs
    status: EntitlementStatus
    tier: Tier
    product_id: Optional[str] = None
    period_start: Optional[datetime] = None
    # Provider linkage learned during verification (e.g. original_transaction_id)
    linkage: Optional[dict] = None


@dataclass(frozen=True)
class GooglePurchaseRef:
    product_id: str
    purchase_token: str


VerifierRef = Union[str, GooglePurchaseRef]


class SubscriptionVerifier(Protocol):
    """
    Protocol for provider verifiers.

    ref is provider-specific:
    - Stripe: subscription id
    - Apple: base64 receipt blob
    - Google: GooglePurchaseRef(product_id, purchase_token)
    """

    def verify(self, ref: VerifierRef) -> VerificationResult:
        """
        Returns:
            VerificationResult with active/expiry taken from the provider

        Raises:
            VerificationUnknownError: timeout, transport error, unexpected status
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class VerificationUnknownError(BillingProviderError):
    """Provider gave no definitive answer; state must not change."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class BillingWebhookError(BillingProviderError):
    """Webhook payload could not be parsed."""
    pass
