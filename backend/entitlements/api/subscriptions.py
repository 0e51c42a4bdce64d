"""Subscription endpoints.

Handles the plan catalog, receipt verification and restore, subscription
status, user cancellation, and the App Store / Google Play server
notification webhooks.
"""

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from entitlements.api import auth
from entitlements.errors import EntitlementError
from entitlements.models import Plan, Storefront, Subscription
from entitlements.services import reconciliation

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/subscriptions",
    tags=["subscriptions"],
)


# ==================== Request/Response Models ====================

class PlanResponse(BaseModel):
    id: int
    name: str
    apple_product_id: str | None
    google_product_id: str | None
    price_usd: str  # decimal as string, e.g. "4.99"
    duration_months: int
    features: dict[str, Any]

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            apple_product_id=plan.apple_product_id,
            google_product_id=plan.google_product_id,
            price_usd=f"{plan.price_usd:.2f}",
            duration_months=plan.duration_months,
            features=plan.features,
        )


class SubscriptionResponse(BaseModel):
    id: int
    plan_id: int | None
    platform: str
    platform_subscription_id: str
    status: str
    starts_at: datetime
    expires_at: datetime
    cancelled_at: datetime | None
    is_auto_renewing: bool

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            plan_id=subscription.plan_id,
            platform=subscription.platform.value,
            platform_subscription_id=subscription.platform_subscription_id,
            status=subscription.status.value,
            starts_at=subscription.starts_at,
            expires_at=subscription.expires_at,
            cancelled_at=subscription.cancelled_at,
            is_auto_renewing=subscription.is_auto_renewing,
        )


class VerifyReceiptRequest(BaseModel):
    """Receipt submitted by the app after a purchase or restore.

    Apple: the base64 app receipt.
    Google: JSON string {"packageName", "productId", "purchaseToken"}.
    """
    platform: Literal["apple", "google"]
    receipt_data: str = Field(min_length=1)


class VerifyReceiptResponse(BaseModel):
    ok: bool
    is_new: bool
    message: str
    subscription: SubscriptionResponse
    plan: PlanResponse


class SubscriptionStatusResponse(BaseModel):
    has_active_subscription: bool
    tier: str  # "free" or "pro"
    subscription: SubscriptionResponse | None
    plan: PlanResponse | None


def _http_error(e: EntitlementError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== Endpoints ====================

@router.get("/plans", response_model=list[PlanResponse])
def list_plans():
    """List purchasable plans, cheapest first."""
    return [PlanResponse.from_plan(plan) for plan in reconciliation.list_plans()]


async def _verify(body: VerifyReceiptRequest, user_id: int, restore: bool) -> VerifyReceiptResponse:
    try:
        if restore:
            result = await reconciliation.restore_purchases(user_id, body.platform, body.receipt_data)
        else:
            result = await reconciliation.verify_receipt(user_id, body.platform, body.receipt_data)
    except EntitlementError as e:
        logger.warning(f"Receipt verification failed for user {user_id} ({body.platform}): {e.code} {e.message}")
        raise _http_error(e)

    if restore:
        message = "Purchases restored"
    elif result.is_new:
        message = "Subscription activated"
    else:
        message = "Subscription updated"

    return VerifyReceiptResponse(
        ok=True,
        is_new=result.is_new,
        message=message,
        subscription=SubscriptionResponse.from_subscription(result.subscription),
        plan=PlanResponse.from_plan(result.plan),
    )


@router.post("/verify", response_model=VerifyReceiptResponse)
async def verify_receipt(body: VerifyReceiptRequest, user_id: int = Depends(auth.get_current_user_id)):
    """Verify a purchase receipt with the storefront and activate the subscription."""
    return await _verify(body, user_id, restore=False)


@router.post("/restore", response_model=VerifyReceiptResponse)
async def restore_purchases(body: VerifyReceiptRequest, user_id: int = Depends(auth.get_current_user_id)):
    """Restore purchases from a receipt (reinstall, new device)."""
    return await _verify(body, user_id, restore=True)


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(user_id: int = Depends(auth.get_current_user_id)):
    """Get current subscription status."""
    result = reconciliation.get_status(user_id)
    subscription = result["subscription"]
    plan = result["plan"]
    return SubscriptionStatusResponse(
        has_active_subscription=result["has_active_subscription"],
        tier=result["tier"],
        subscription=SubscriptionResponse.from_subscription(subscription) if subscription else None,
        plan=PlanResponse.from_plan(plan) if plan else None,
    )


@router.post("/cancel/{subscription_id}", response_model=SubscriptionResponse)
def cancel_subscription(subscription_id: int, user_id: int = Depends(auth.get_current_user_id)):
    """Cancel a subscription. Access continues until the paid window ends."""
    try:
        subscription = reconciliation.cancel_subscription(user_id, subscription_id)
    except EntitlementError as e:
        raise _http_error(e)
    return SubscriptionResponse.from_subscription(subscription)


# ==================== Webhooks ====================
# Storefronts disable endpoints that keep failing, so these always answer 200.

async def _webhook(storefront: Storefront, request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as e:
        logger.warning(f"{storefront.value} webhook with unreadable body: {e}")
        return {"ok": False, "processed": False, "reason": "invalid JSON body"}

    result = await reconciliation.handle_webhook(storefront, payload)
    return {"ok": True, **result}


@router.get("/webhook/apple")
async def apple_webhook_info():
    """Health check for the Apple webhook endpoint.

    Apple sends POST requests, so this GET endpoint is just for verification.
    """
    return {
        "status": "ok",
        "message": "Apple App Store Server Notifications webhook is active",
        "method": "POST requests only for notifications"
    }


@router.post("/webhook/apple")
async def apple_webhook(request: Request):
    """Receive App Store Server Notifications."""
    return await _webhook(Storefront.APPLE, request)


@router.post("/webhook/google")
async def google_webhook(request: Request):
    """Receive Google Play real-time developer notifications (Pub/Sub push)."""
    return await _webhook(Storefront.GOOGLE, request)
