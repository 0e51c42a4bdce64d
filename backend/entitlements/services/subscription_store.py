"""Subscription rows and the status state machine.

Every write here is a single conditional statement keyed by the natural
identifier ``(platform, platform_subscription_id)``. The WHERE clause carries
the source states an event may leave from, so concurrent verify, webhook and
sweep writers converge on one row instead of racing a read-modify-write.
A transition whose source state is not allowed matches no row and is a no-op.

Entitlement side effects are not applied here; callers run them after the
transaction has committed (see ``entitlements.services.users``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite

from entitlements import database as db
from entitlements.models import (
    ENTITLING_STATUSES,
    Storefront,
    Subscription,
    SubscriptionStatus,
    as_utc,
    subscriptions,
)
from entitlements.services.verification import VerificationResult

log = logging.getLogger(__name__)


class TransitionEvent(str, Enum):
    VERIFIED = "verified"
    RENEWED = "renewed"
    USER_CANCELLED = "user_cancelled"
    STOREFRONT_CANCELLED = "storefront_cancelled"
    BILLING_FAILED = "billing_failed"
    GRACE_PERIOD = "grace_period"
    LAPSED = "lapsed"
    SWEPT = "swept"
    RENEWAL_PREFERENCE = "renewal_preference"


@dataclass(frozen=True)
class Transition:
    allowed_from: tuple[SubscriptionStatus, ...] | None  # None = any state
    to_status: SubscriptionStatus | None  # None = status unchanged
    downgrades: bool = False


TRANSITIONS: dict[TransitionEvent, Transition] = {
    TransitionEvent.VERIFIED: Transition(None, SubscriptionStatus.ACTIVE),
    TransitionEvent.RENEWED: Transition(ENTITLING_STATUSES, SubscriptionStatus.ACTIVE),
    TransitionEvent.USER_CANCELLED: Transition(ENTITLING_STATUSES, SubscriptionStatus.CANCELLED),
    TransitionEvent.STOREFRONT_CANCELLED: Transition(None, SubscriptionStatus.CANCELLED, downgrades=True),
    TransitionEvent.BILLING_FAILED: Transition((SubscriptionStatus.ACTIVE,), SubscriptionStatus.BILLING_RETRY),
    TransitionEvent.GRACE_PERIOD: Transition((SubscriptionStatus.ACTIVE,), SubscriptionStatus.GRACE_PERIOD),
    TransitionEvent.LAPSED: Transition(ENTITLING_STATUSES, SubscriptionStatus.EXPIRED, downgrades=True),
    TransitionEvent.SWEPT: Transition(ENTITLING_STATUSES, SubscriptionStatus.EXPIRED, downgrades=True),
    TransitionEvent.RENEWAL_PREFERENCE: Transition(ENTITLING_STATUSES, None),
}


def _status_values(statuses) -> list[str]:
    return [s.value for s in statuses]


def _insert(table: sa.Table):
    """Dialect insert that supports ON CONFLICT."""
    if db.is_sqlite():
        return sqlite.insert(table)
    return postgresql.insert(table)


def _natural_key(storefront: Storefront, platform_subscription_id: str):
    return sa.and_(
        subscriptions.c.platform == storefront.value,
        subscriptions.c.platform_subscription_id == platform_subscription_id,
    )


@dataclass
class RecordedVerification:
    subscription: Subscription
    is_new: bool
    previous_owner_id: int | None = None


def record_verification(
    user_id: int,
    plan_id: int,
    storefront: Storefront,
    result: VerificationResult,
    receipt_data: str,
    now: datetime | None = None,
) -> RecordedVerification:
    """Upsert the verified chain to ``active``.

    Insert wins for a never-seen chain; otherwise the existing row is moved
    to ``active`` from any state (including ``cancelled``, which is how a
    restore works). Ownership follows the user who verified last.
    """
    now = now or datetime.now(UTC)
    expires_at = as_utc(result.expires_at)
    # The window never starts after it ends
    starts_at = min(as_utc(result.starts_at) or now, expires_at)

    with db.engine.begin() as conn:
        inserted = conn.execute(
            _insert(subscriptions)
            .values(
                user_id=user_id,
                plan_id=plan_id,
                platform=storefront.value,
                platform_subscription_id=result.platform_subscription_id,
                receipt_data=receipt_data,
                status=SubscriptionStatus.ACTIVE.value,
                starts_at=starts_at,
                expires_at=expires_at,
                cancelled_at=None,
                is_auto_renewing=result.is_auto_renewing,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["platform", "platform_subscription_id"])
            .returning(*subscriptions.c)
        ).fetchone()

        if inserted is not None:
            log.info(
                f"[Subscriptions] Created {storefront.value} subscription {inserted.id} "
                f"for user {user_id} (expires {expires_at.isoformat()})"
            )
            return RecordedVerification(Subscription.from_row(inserted), is_new=True)

        previous_owner_id = conn.execute(
            sa.select(subscriptions.c.user_id)
            .where(_natural_key(storefront, result.platform_subscription_id))
            .with_for_update()
        ).scalar()

        updated = conn.execute(
            sa.update(subscriptions)
            .where(_natural_key(storefront, result.platform_subscription_id))
            .values(
                user_id=user_id,
                plan_id=plan_id,
                receipt_data=receipt_data,
                status=SubscriptionStatus.ACTIVE.value,
                starts_at=starts_at,
                expires_at=expires_at,
                cancelled_at=None,
                is_auto_renewing=result.is_auto_renewing,
                updated_at=now,
            )
            .returning(*subscriptions.c)
        ).fetchone()

    subscription = Subscription.from_row(updated)
    log.info(
        f"[Subscriptions] Re-verified {storefront.value} subscription {subscription.id} "
        f"for user {user_id} (expires {expires_at.isoformat()})"
    )
    if previous_owner_id is not None and previous_owner_id != user_id:
        log.warning(
            f"[Subscriptions] Subscription {subscription.id} moved from user {previous_owner_id} to user {user_id}"
        )
        return RecordedVerification(subscription, is_new=False, previous_owner_id=previous_owner_id)
    return RecordedVerification(subscription, is_new=False)


def apply_transition(
    storefront: Storefront,
    platform_subscription_id: str,
    event: TransitionEvent,
    *,
    expires_at: datetime | None = None,
    is_auto_renewing: bool | None = None,
    receipt_data: str | None = None,
    now: datetime | None = None,
) -> Subscription | None:
    """Apply one state-machine event to the row of a renewal chain.

    Returns the updated row, or None when no row exists or its current
    status does not allow the event.
    """
    if event in (TransitionEvent.VERIFIED, TransitionEvent.SWEPT):
        raise ValueError(f"{event.value} is applied by record_verification / expire_lapsed")

    transition = TRANSITIONS[event]
    now = now or datetime.now(UTC)
    values: dict = {"updated_at": now}

    if transition.to_status is not None:
        values["status"] = transition.to_status.value

    if event == TransitionEvent.RENEWED:
        values["is_auto_renewing"] = True if is_auto_renewing is None else is_auto_renewing
        values["cancelled_at"] = None
        if expires_at is not None:
            values["expires_at"] = as_utc(expires_at)
        if receipt_data is not None:
            values["receipt_data"] = receipt_data
    elif event in (TransitionEvent.USER_CANCELLED, TransitionEvent.STOREFRONT_CANCELLED):
        values["is_auto_renewing"] = False
        # Replays keep the first cancellation time
        values["cancelled_at"] = sa.func.coalesce(subscriptions.c.cancelled_at, now)
    elif event == TransitionEvent.LAPSED:
        values["is_auto_renewing"] = False
    elif is_auto_renewing is not None:
        values["is_auto_renewing"] = is_auto_renewing

    if event == TransitionEvent.GRACE_PERIOD and expires_at is not None:
        # Play extends the window to the end of the grace period
        values["expires_at"] = as_utc(expires_at)

    stmt = sa.update(subscriptions).where(_natural_key(storefront, platform_subscription_id))
    if transition.allowed_from is not None:
        stmt = stmt.where(subscriptions.c.status.in_(_status_values(transition.allowed_from)))
    if "expires_at" in values:
        # Keep expires_at >= starts_at
        stmt = stmt.where(subscriptions.c.starts_at <= values["expires_at"])

    with db.engine.begin() as conn:
        row = conn.execute(stmt.values(**values).returning(*subscriptions.c)).fetchone()

    if row is None:
        log.info(
            f"[Subscriptions] {event.value} ignored for {storefront.value} chain "
            f"{platform_subscription_id}: no row in an allowed state"
        )
        return None

    subscription = Subscription.from_row(row)
    log.info(
        f"[Subscriptions] {event.value}: subscription {subscription.id} "
        f"(user {subscription.user_id}) is now {subscription.status.value}"
    )
    return subscription


def expire_lapsed(now: datetime | None = None) -> list[tuple[int, int]]:
    """Move elapsed, non-renewing entitling rows to ``expired``.

    Returns (subscription_id, user_id) pairs for the rows that changed.
    """
    now = now or datetime.now(UTC)
    with db.engine.begin() as conn:
        rows = conn.execute(
            sa.update(subscriptions)
            .where(
                subscriptions.c.status.in_(_status_values(TRANSITIONS[TransitionEvent.SWEPT].allowed_from)),
                subscriptions.c.expires_at < now,
                subscriptions.c.is_auto_renewing.is_(False),
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            .returning(subscriptions.c.id, subscriptions.c.user_id)
        ).fetchall()
    return [(row.id, row.user_id) for row in rows]


# ==================== Reads ====================

def get_by_id(subscription_id: int) -> Subscription | None:
    with db.engine.begin() as conn:
        row = conn.execute(
            sa.select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).fetchone()
    return Subscription.from_row(row) if row else None


def get_by_natural_key(storefront: Storefront, platform_subscription_id: str) -> Subscription | None:
    with db.engine.begin() as conn:
        row = conn.execute(
            sa.select(subscriptions).where(_natural_key(storefront, platform_subscription_id))
        ).fetchone()
    return Subscription.from_row(row) if row else None


def list_for_user(user_id: int) -> list[Subscription]:
    with db.engine.begin() as conn:
        rows = conn.execute(
            sa.select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.expires_at.desc(), subscriptions.c.id.desc())
        ).fetchall()
    return [Subscription.from_row(row) for row in rows]


def find_current_entitling(user_id: int) -> Subscription | None:
    """The entitling row with the latest expiry, if any."""
    with db.engine.begin() as conn:
        row = conn.execute(
            sa.select(subscriptions)
            .where(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status.in_(_status_values(ENTITLING_STATUSES)),
            )
            .order_by(subscriptions.c.expires_at.desc(), subscriptions.c.id.desc())
            .limit(1)
        ).fetchone()
    return Subscription.from_row(row) if row else None


def latest_entitling_expiry(user_id: int, now: datetime | None = None) -> datetime | None:
    """Latest ``expires_at`` among the user's entitling rows still inside their window."""
    now = now or datetime.now(UTC)
    with db.engine.begin() as conn:
        expires_at = conn.execute(
            sa.select(sa.func.max(subscriptions.c.expires_at)).where(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status.in_(_status_values(ENTITLING_STATUSES)),
                subscriptions.c.expires_at > now,
            )
        ).scalar()
    return as_utc(expires_at)
