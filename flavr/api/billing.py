"""
Billing API routes.

- POST /api/billing/webhooks/stripe: Stripe events (Stripe-Signature)
- POST /api/billing/webhooks/apple: App Store server notifications (v1)
- POST /api/billing/webhooks/google: Play developer notifications (Pub/Sub push)
- POST /api/billing/mobile/verify: link an App Store / Play purchase
- GET  /api/billing/status: current subscription details
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError
from starlette.concurrency import run_in_threadpool

from flavr.core.auth import get_current_user_id
from flavr.core.errors import AppError, ProviderUnavailableError, ValidationError
from flavr.features.billing.provider import BillingWebhookError, VerificationUnknownError
from flavr.features.billing.service import (
    WebhookOutcome,
    process_apple_webhook,
    process_google_webhook,
    process_stripe_webhook,
    with_datastore_retry,
)
from flavr.features.entitlements.service import get_engine
from flavr.models.entitlement import Provider


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class WebhookAck(BaseModel):
    received: bool
    outcome: str
    event_type: str


class MobileVerifyRequest(BaseModel):
    """Purchase data reported by the mobile client after an in-app purchase."""
    platform: str  # "ios" | "android"
    receipt_data: Optional[str] = None  # iOS
    product_id: Optional[str] = None  # Android
    purchase_token: Optional[str] = None  # Android


class SubscriptionStatusResponse(BaseModel):
    user_id: str
    has_entitlement: bool
    status: str
    tier: str
    provider: str
    operator_override: bool
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    renew_at: Optional[str] = None
    usage: Dict[str, Any]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _status_payload(details: Dict[str, Any]) -> Dict[str, Any]:
    usage = dict(details["usage"])
    usage["usage_reset_at"] = _iso(usage.get("usage_reset_at"))
    return {
        **details,
        "period_start": _iso(details.get("period_start")),
        "period_end": _iso(details.get("period_end")),
        "renew_at": _iso(details.get("renew_at")),
        "usage": usage,
    }


def _ack(outcome: WebhookOutcome) -> Dict[str, Any]:
    logger.info(
        "[billing] webhook processed",
        extra={
            "provider": outcome.provider,
            "event_type": outcome.event_type,
            "outcome": outcome.outcome,
            "user_id": outcome.user_id,
        },
    )
    return {"received": True, "outcome": outcome.outcome, "event_type": outcome.event_type}


def _run_webhook(fn) -> Dict[str, Any]:
    """
    Shared webhook execution.

    Called through run_in_threadpool: processing blocks on the database and on provider calls.
    Transient datastore errors are retried, then surface as 500 so the provider
    redelivers. Malformed payloads are rejected with 400.
    """
    try:
        return _ack(with_datastore_retry(fn))
    except BillingWebhookError as e:
        raise ValidationError(str(e), code="invalid_payload")
    except OperationalError:
        logger.exception("[billing] webhook failed after retries")
        raise AppError("Temporary storage failure; retry delivery", code="storage_unavailable", status_code=500)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(req: Request):
    """Raw body is required for signature verification."""
    body = await req.body()
    headers = dict(req.headers)
    return await run_in_threadpool(_run_webhook, lambda: process_stripe_webhook(headers, body))


@router.post("/webhooks/apple", response_model=WebhookAck)
async def apple_webhook(req: Request):
    body = await req.body()
    return await run_in_threadpool(_run_webhook, lambda: process_apple_webhook(body))


@router.post("/webhooks/google", response_model=WebhookAck)
async def google_webhook(
    req: Request,
    token: Optional[str] = Query(None),
    x_goog_webhook_token: Optional[str] = Header(None),
):
    body = await req.body()
    push_token = token or x_goog_webhook_token
    return await run_in_threadpool(_run_webhook, lambda: process_google_webhook(body, push_token))


@router.post("/mobile/verify", response_model=SubscriptionStatusResponse)
def verify_mobile_purchase(request: MobileVerifyRequest, user_id: str = Depends(get_current_user_id)):
    """
    Verify an in-app purchase and link it to the caller.

    Errors:
        400: missing purchase data or purchase owned by another account
        503: provider could not verify (nothing written; client should retry)
    """
    platform = request.platform.lower()
    if platform == "ios":
        provider = Provider.APPLE
    elif platform == "android":
        provider = Provider.GOOGLE
    else:
        raise ValidationError(f"Unsupported platform: {request.platform}")

    engine = get_engine()
    try:
        engine.link_mobile_purchase(
            user_id,
            provider,
            receipt_blob=request.receipt_data,
            product_id=request.product_id,
            purchase_token=request.purchase_token,
        )
    except VerificationUnknownError as e:
        raise ProviderUnavailableError(f"Could not verify purchase: {e}")

    return _status_payload(engine.get_subscription_details(user_id))


@router.get("/status", response_model=SubscriptionStatusResponse)
def subscription_status(user_id: str = Depends(get_current_user_id)):
    return _status_payload(get_engine().get_subscription_details(user_id))
