"""Expiry sweep: ends subscriptions whose window elapsed without a renewal."""
from __future__ import annotations

import logging
from datetime import datetime, UTC

from entitlements.services import subscription_store, users

log = logging.getLogger(__name__)


def expire_lapsed_subscriptions(now: datetime | None = None) -> int:
    """Expire lapsed, non-renewing subscriptions and downgrade their owners.

    A user is downgraded only when none of their other entitling rows is
    still inside its window (e.g. mid-switch between plans).

    Returns the number of subscriptions expired.
    """
    now = now or datetime.now(UTC)
    expired = subscription_store.expire_lapsed(now)
    if not expired:
        return 0

    user_ids = sorted({user_id for _, user_id in expired})
    for user_id in user_ids:
        users.refresh_entitlement(user_id, now)

    log.info(
        f"[Sweeper] Expired {len(expired)} subscriptions {[sub_id for sub_id, _ in expired]} "
        f"for users {user_ids}"
    )
    return len(expired)
