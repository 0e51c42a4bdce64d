"""Storefront server-notification decoding.

Each storefront's webhook envelope is decoded into a ``ParsedNotification``
carrying one ``TransitionEvent`` (or none, for notifications that do not
change a subscription). Nothing in here touches the database.

App Store:
    - Server Notifications V2: ``{"signedPayload": "<JWS>"}``, with nested
      ``signedTransactionInfo`` / ``signedRenewalInfo`` JWS strings.
    - Plain JSON: ``{"notification_type", "data": {"original_transaction_id",
      "expires_date_ms"}}`` (legacy V1-style body).

Google Play (Real-time developer notifications via Pub/Sub push):
    ``{"message": {"data": "<base64 JSON>"}}`` where the decoded JSON holds a
    ``subscriptionNotification`` with ``notificationType`` and ``purchaseToken``.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from entitlements.config import settings
from entitlements.models import Storefront, ms_to_datetime
from entitlements.services.app_store import decode_signed_payload
from entitlements.services.subscription_store import TransitionEvent

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedNotification:
    storefront: Storefront
    notification_type: str
    event: TransitionEvent | None
    platform_subscription_id: str | None = None
    expires_at: datetime | None = None
    is_auto_renewing: bool | None = None
    # Play notifications carry no purchase detail; the stored receipt is re-verified
    reverify: bool = False


# ==================== App Store ====================

APPLE_EVENTS = {
    "SUBSCRIBED": TransitionEvent.RENEWED,
    "DID_RENEW": TransitionEvent.RENEWED,
    "DID_RECOVER": TransitionEvent.RENEWED,
    "INTERACTIVE_RENEWAL": TransitionEvent.RENEWED,
    "DID_FAIL_TO_RENEW": TransitionEvent.BILLING_FAILED,
    "GRACE_PERIOD_EXPIRED": TransitionEvent.LAPSED,
    "EXPIRED": TransitionEvent.LAPSED,
    "DID_CHANGE_RENEWAL_STATUS": TransitionEvent.RENEWAL_PREFERENCE,
    "CANCEL": TransitionEvent.STOREFRONT_CANCELLED,
    "REFUND": TransitionEvent.STOREFRONT_CANCELLED,
    "REVOKE": TransitionEvent.STOREFRONT_CANCELLED,
}


def _auto_renew_flag(value: Any) -> bool | None:
    if value is None:
        return None
    return str(value).lower() in ("1", "true")


def _decode_apple_v2(signed_payload: str) -> ParsedNotification:
    verify = settings.APPLE_WEBHOOK_VERIFY_SIGNATURE
    payload = decode_signed_payload(signed_payload, verify=verify)

    notification_type = str(payload.get("notificationType") or "")
    subtype = payload.get("subtype")
    data = payload.get("data") or {}

    transaction: dict[str, Any] = {}
    if data.get("signedTransactionInfo"):
        transaction = decode_signed_payload(data["signedTransactionInfo"], verify=verify)

    renewal: dict[str, Any] = {}
    if data.get("signedRenewalInfo"):
        renewal = decode_signed_payload(data["signedRenewalInfo"], verify=verify)

    is_auto_renewing = _auto_renew_flag(renewal.get("autoRenewStatus"))
    if is_auto_renewing is None and subtype in ("AUTO_RENEW_ENABLED", "AUTO_RENEW_DISABLED"):
        is_auto_renewing = subtype == "AUTO_RENEW_ENABLED"

    original_transaction_id = transaction.get("originalTransactionId") or renewal.get("originalTransactionId")
    log.info(
        f"[AppleWebhook] V2 notification type={notification_type}, subtype={subtype}, "
        f"env={data.get('environment', 'Production')}, uuid={payload.get('notificationUUID')}, verified={verify}"
    )

    return ParsedNotification(
        storefront=Storefront.APPLE,
        notification_type=notification_type,
        event=APPLE_EVENTS.get(notification_type),
        platform_subscription_id=str(original_transaction_id) if original_transaction_id else None,
        expires_at=ms_to_datetime(transaction.get("expiresDate")),
        is_auto_renewing=is_auto_renewing,
    )


def _decode_apple_json(payload: dict[str, Any]) -> ParsedNotification:
    notification_type = str(payload.get("notification_type") or "")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    original_transaction_id = data.get("original_transaction_id") or payload.get("original_transaction_id")
    expires_date_ms = data.get("expires_date_ms") or payload.get("expires_date_ms")
    auto_renew = data.get("auto_renew_status", payload.get("auto_renew_status"))

    log.info(f"[AppleWebhook] JSON notification type={notification_type}")
    return ParsedNotification(
        storefront=Storefront.APPLE,
        notification_type=notification_type,
        event=APPLE_EVENTS.get(notification_type),
        platform_subscription_id=str(original_transaction_id) if original_transaction_id else None,
        expires_at=ms_to_datetime(expires_date_ms),
        is_auto_renewing=_auto_renew_flag(auto_renew),
    )


def decode_apple_notification(payload: Any) -> ParsedNotification:
    """Decode an App Store notification body.

    Raises:
        ValueError: malformed body, or a signed payload that fails verification
    """
    if not isinstance(payload, dict):
        raise ValueError("App Store notification body must be a JSON object")

    if payload.get("signedPayload"):
        return _decode_apple_v2(payload["signedPayload"])
    if payload.get("notification_type"):
        return _decode_apple_json(payload)
    raise ValueError("App Store notification has neither signedPayload nor notification_type")


# ==================== Google Play ====================

# subscriptionNotification.notificationType
PLAY_RECOVERED = 1
PLAY_RENEWED = 2
PLAY_CANCELED = 3
PLAY_PURCHASED = 4
PLAY_ON_HOLD = 5
PLAY_IN_GRACE_PERIOD = 6
PLAY_RESTARTED = 7
PLAY_PRICE_CHANGE_CONFIRMED = 8
PLAY_DEFERRED = 9
PLAY_PAUSED = 10
PLAY_PAUSE_SCHEDULE_CHANGED = 11
PLAY_REVOKED = 12
PLAY_EXPIRED = 13

GOOGLE_EVENTS = {
    PLAY_RECOVERED: TransitionEvent.RENEWED,
    PLAY_RENEWED: TransitionEvent.RENEWED,
    PLAY_PURCHASED: TransitionEvent.RENEWED,
    PLAY_RESTARTED: TransitionEvent.RENEWED,
    PLAY_DEFERRED: TransitionEvent.RENEWED,
    PLAY_CANCELED: TransitionEvent.STOREFRONT_CANCELLED,
    PLAY_REVOKED: TransitionEvent.STOREFRONT_CANCELLED,
    PLAY_ON_HOLD: TransitionEvent.BILLING_FAILED,
    PLAY_IN_GRACE_PERIOD: TransitionEvent.GRACE_PERIOD,
    PLAY_EXPIRED: TransitionEvent.LAPSED,
}


def decode_google_notification(payload: Any) -> ParsedNotification:
    """Decode a Pub/Sub push body carrying a Play developer notification.

    Raises:
        ValueError: missing or undecodable ``message.data``
    """
    message = payload.get("message") if isinstance(payload, dict) else None
    if not isinstance(message, dict) or not message.get("data"):
        raise ValueError("Pub/Sub push body is missing message.data")

    try:
        notification = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError) as e:
        raise ValueError(f"Undecodable Pub/Sub message data: {e}")

    if not isinstance(notification, dict):
        raise ValueError("Play notification is not an object")

    subscription_notification = notification.get("subscriptionNotification")
    if not isinstance(subscription_notification, dict):
        kind = "test" if "testNotification" in notification else "non-subscription"
        log.info(f"[GoogleWebhook] Ignoring {kind} notification for {notification.get('packageName')}")
        return ParsedNotification(
            storefront=Storefront.GOOGLE,
            notification_type=kind,
            event=None,
        )

    try:
        notification_type = int(subscription_notification.get("notificationType"))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid Play notificationType: {subscription_notification.get('notificationType')}")

    event = GOOGLE_EVENTS.get(notification_type)
    purchase_token = subscription_notification.get("purchaseToken")
    log.info(
        f"[GoogleWebhook] Notification type={notification_type} for "
        f"{subscription_notification.get('subscriptionId')}"
    )

    return ParsedNotification(
        storefront=Storefront.GOOGLE,
        notification_type=str(notification_type),
        event=event,
        platform_subscription_id=str(purchase_token) if purchase_token else None,
        reverify=event == TransitionEvent.RENEWED,
    )


def decode_notification(storefront: Storefront, payload: Any) -> ParsedNotification:
    if storefront == Storefront.APPLE:
        return decode_apple_notification(payload)
    return decode_google_notification(payload)
