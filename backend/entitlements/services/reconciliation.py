"""Reconciles receipts, storefront notifications and user actions into
subscription rows, then applies the entitlement side effect.

Entry points:
    verify_receipt / restore_purchases - client-submitted receipts
    handle_webhook                     - storefront server notifications
    cancel_subscription                - user-initiated cancellation
    get_status / list_plans            - reads

Side effects always run after the subscription write has committed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, UTC
from typing import Any

from entitlements.errors import (
    EntitlementError,
    InvalidReceiptError,
    NotFoundError,
    ReceiptCancelledError,
    ValidationError,
)
from entitlements.models import Plan, Storefront, Subscription, SubscriptionStatus, as_utc
from entitlements.services import plans, subscription_store, users
from entitlements.services.notifications import ParsedNotification, decode_notification
from entitlements.services.subscription_store import TRANSITIONS, TransitionEvent
from entitlements.services.verification import (
    ReceiptVerifier,
    VerificationResult,
    get_verifier,
    parse_storefront,
)

log = logging.getLogger(__name__)


@dataclass
class VerifyResult:
    subscription: Subscription
    is_new: bool
    plan: Plan


async def verify_receipt(
    user_id: int,
    storefront: str | Storefront,
    receipt_data: str,
    verifier: ReceiptVerifier | None = None,
) -> VerifyResult:
    """Verify a receipt with its storefront and activate the subscription.

    Raises:
        NotFoundError: unknown user, or no active plan for the verified product
        ValidationError: unknown storefront, empty receipt
        InvalidReceiptError: the storefront rejected the receipt
        ReceiptCancelledError: the storefront reports the purchase cancelled
        StorefrontUnavailableError: the storefront could not be reached
        ConfigurationError: verification credentials are missing
    """
    storefront = parse_storefront(storefront)

    if users.lookup_user(user_id) is None:
        raise NotFoundError("User", user_id)

    if not receipt_data or not receipt_data.strip():
        raise ValidationError("Receipt data is required", field="receipt_data")

    verifier = verifier or get_verifier(storefront)
    result = await verifier.verify(receipt_data)

    if result.is_cancelled:
        log.info(
            f"[Reconcile] Rejected cancelled {storefront.value} receipt for user {user_id} "
            f"(chain {result.platform_subscription_id})"
        )
        raise ReceiptCancelledError("Subscription has been cancelled", field="receipt_data")

    if as_utc(result.expires_at) <= datetime.now(UTC):
        log.info(
            f"[Reconcile] Rejected expired {storefront.value} receipt for user {user_id} "
            f"(chain {result.platform_subscription_id}, expired {result.expires_at.isoformat()})"
        )
        raise InvalidReceiptError("Subscription has expired", field="receipt_data")

    plan = plans.find_plan_for_product(storefront, result.product_id)
    if plan is None:
        log.warning(f"[Reconcile] No active plan for {storefront.value} product {result.product_id}")
        raise NotFoundError("Plan", result.product_id)

    recorded = subscription_store.record_verification(
        user_id=user_id,
        plan_id=plan.id,
        storefront=storefront,
        result=result,
        receipt_data=receipt_data,
    )

    users.refresh_entitlement(user_id)
    if recorded.previous_owner_id is not None:
        # The chain left its previous owner; they keep pro only through other rows
        users.refresh_entitlement(recorded.previous_owner_id)

    return VerifyResult(subscription=recorded.subscription, is_new=recorded.is_new, plan=plan)


async def restore_purchases(
    user_id: int,
    storefront: str | Storefront,
    receipt_data: str,
    verifier: ReceiptVerifier | None = None,
) -> VerifyResult:
    """Re-verify a receipt after a reinstall or on a new device."""
    return await verify_receipt(user_id, storefront, receipt_data, verifier=verifier)


def get_status(user_id: int) -> dict[str, Any]:
    subscription = subscription_store.find_current_entitling(user_id)
    if subscription is None:
        return {
            "has_active_subscription": False,
            "tier": users.get_user_tier(user_id),
            "subscription": None,
            "plan": None,
        }

    plan = plans.get_plan(subscription.plan_id) if subscription.plan_id else None
    return {
        "has_active_subscription": True,
        "tier": users.get_user_tier(user_id),
        "subscription": subscription,
        "plan": plan,
    }


def cancel_subscription(user_id: int, subscription_id: int) -> Subscription:
    """Cancel one of the user's subscriptions.

    The tier is left alone here; the user keeps what they paid for until the
    sweep or the storefront ends the window.
    """
    subscription = subscription_store.get_by_id(subscription_id)
    if subscription is None or subscription.user_id != user_id:
        raise NotFoundError("Subscription", subscription_id)

    if subscription.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
        raise ValidationError(f"Subscription is already {subscription.status.value}", field="id")

    updated = subscription_store.apply_transition(
        subscription.platform,
        subscription.platform_subscription_id,
        TransitionEvent.USER_CANCELLED,
    )
    if updated is None:
        # A webhook or the sweep got there first
        current = subscription_store.get_by_id(subscription_id)
        state = current.status.value if current else "gone"
        raise ValidationError(f"Subscription is already {state}", field="id")

    log.info(f"[Reconcile] User {user_id} cancelled subscription {subscription_id}")
    return updated


def list_plans() -> list[Plan]:
    return plans.list_active_plans()


# ==================== Webhooks ====================

async def handle_webhook(
    storefront: str | Storefront,
    payload: Any,
    verifier: ReceiptVerifier | None = None,
) -> dict[str, Any]:
    """Apply a storefront notification. Never raises.

    Storefronts retry deliveries that fail, and the sweep corrects anything
    still missed, so every error is logged and reported in the result only.
    """
    try:
        storefront = parse_storefront(storefront)
        parsed = decode_notification(storefront, payload)
        return await _apply_notification(parsed, verifier)
    except (ValueError, EntitlementError) as e:
        log.warning(f"[Webhook] Rejected {storefront} notification: {e}")
        return {"processed": False, "reason": str(e)}
    except Exception as e:
        log.exception(f"[Webhook] Error processing {storefront} notification: {e}")
        return {"processed": False, "reason": "internal error"}


async def _apply_notification(parsed: ParsedNotification, verifier: ReceiptVerifier | None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "processed": False,
        "platform": parsed.storefront.value,
        "notification_type": parsed.notification_type,
    }

    if parsed.event is None:
        log.info(f"[Webhook] Unhandled {parsed.storefront.value} notification type {parsed.notification_type}")
        return {**result, "reason": "ignored"}

    if not parsed.platform_subscription_id:
        log.warning(f"[Webhook] {parsed.storefront.value} {parsed.notification_type} without a subscription id")
        return {**result, "reason": "missing subscription id"}

    existing = subscription_store.get_by_natural_key(parsed.storefront, parsed.platform_subscription_id)
    if existing is None:
        # The notification raced ahead of the first verify, or was never verified client-side
        log.warning(
            f"[Webhook] No {parsed.storefront.value} subscription for chain {parsed.platform_subscription_id}"
        )
        return {**result, "reason": "subscription not found"}

    event = parsed.event
    expires_at = parsed.expires_at
    is_auto_renewing = parsed.is_auto_renewing

    if parsed.reverify:
        if not existing.receipt_data:
            log.warning(f"[Webhook] Subscription {existing.id} has no stored receipt to re-verify")
            return {**result, "reason": "no stored receipt"}
        try:
            verification = await (verifier or get_verifier(parsed.storefront)).verify(existing.receipt_data)
        except EntitlementError as e:
            log.error(f"[Webhook] Failed to re-verify subscription {existing.id}: {e.message}")
            return {**result, "reason": e.code}
        if verification.is_cancelled:
            event = TransitionEvent.STOREFRONT_CANCELLED
        elif as_utc(verification.expires_at) <= datetime.now(UTC):
            event = TransitionEvent.LAPSED
        else:
            # Paid per the storefront: activate from any state, like a client verify
            return _record_reverification(result, existing, verification)
        expires_at = verification.expires_at
        is_auto_renewing = verification.is_auto_renewing

    updated = subscription_store.apply_transition(
        parsed.storefront,
        parsed.platform_subscription_id,
        event,
        expires_at=expires_at,
        is_auto_renewing=is_auto_renewing,
    )
    if updated is None:
        return {**result, "reason": f"{event.value} not allowed from {existing.status.value}"}

    new_tier = None
    if event == TransitionEvent.RENEWED or TRANSITIONS[event].downgrades:
        new_tier = users.refresh_entitlement(updated.user_id)

    return {
        **result,
        "processed": True,
        "event": event.value,
        "subscription_id": updated.id,
        "user_id": updated.user_id,
        "status": updated.status.value,
        "new_tier": new_tier,
    }


def _record_reverification(
    result: dict[str, Any],
    existing: Subscription,
    verification: VerificationResult,
) -> dict[str, Any]:
    plan = plans.find_plan_for_product(existing.platform, verification.product_id)
    recorded = subscription_store.record_verification(
        user_id=existing.user_id,
        plan_id=plan.id if plan is not None else existing.plan_id,
        storefront=existing.platform,
        # Stay on the notified chain even if the storefront echoes another id
        result=replace(verification, platform_subscription_id=existing.platform_subscription_id),
        receipt_data=existing.receipt_data,
    )
    updated = recorded.subscription
    new_tier = users.refresh_entitlement(updated.user_id)
    log.info(f"[Webhook] Re-verified subscription {updated.id} (was {existing.status.value})")

    return {
        **result,
        "processed": True,
        "event": TransitionEvent.VERIFIED.value,
        "subscription_id": updated.id,
        "user_id": updated.user_id,
        "status": updated.status.value,
        "new_tier": new_tier,
    }
