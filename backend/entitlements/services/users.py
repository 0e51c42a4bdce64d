"""User tier lookups and entitlement side effects.

``users.subscription_tier`` / ``subscription_expires_at`` are a denormalized
cache of the subscription rows; ``refresh_entitlement`` recomputes them from
those rows. The profile is also cached in Redis under ``user:{id}``, and every
tier write drops that entry.
"""
from __future__ import annotations

import logging
from datetime import datetime, UTC
from typing import Any

import sqlalchemy as sa
from fastapi import Depends, HTTPException, status

from entitlements import cache
from entitlements import database as db
from entitlements.api import auth
from entitlements.config import settings
from entitlements.models import TIER_FREE, TIER_PRO, as_utc, users
from entitlements.services import subscription_store

log = logging.getLogger(__name__)


def _serialize(profile: dict[str, Any]) -> dict[str, Any]:
    expires_at = profile.get("subscription_expires_at")
    return {**profile, "subscription_expires_at": expires_at.isoformat() if expires_at else None}


def _deserialize(data: dict[str, Any]) -> dict[str, Any]:
    expires_at = data.get("subscription_expires_at")
    return {**data, "subscription_expires_at": as_utc(datetime.fromisoformat(expires_at)) if expires_at else None}


def lookup_user(user_id: int) -> dict[str, Any] | None:
    """Get a user's profile (id, email, tier, tier expiry), read through the cache."""
    key = cache.user_key(user_id)
    cached = cache.get_json(key)
    if isinstance(cached, dict):
        return _deserialize(cached)

    with db.engine.begin() as conn:
        row = conn.execute(
            sa.select(
                users.c.id,
                users.c.email,
                users.c.subscription_tier,
                users.c.subscription_expires_at,
            ).where(users.c.id == user_id)
        ).fetchone()

    if not row:
        return None

    profile = {
        "id": row.id,
        "email": row.email,
        "subscription_tier": row.subscription_tier or TIER_FREE,
        "subscription_expires_at": as_utc(row.subscription_expires_at),
    }
    cache.set_json(key, _serialize(profile), settings.USER_CACHE_TTL_SECONDS)
    return profile


def invalidate_user_cache(user_id: int) -> None:
    cache.delete(cache.user_key(user_id))


def set_user_tier(user_id: int, tier: str, expires_at: datetime | None) -> None:
    """Write the denormalized tier fields and drop the cached profile."""
    with db.engine.begin() as conn:
        conn.execute(
            sa.update(users)
            .where(users.c.id == user_id)
            .values(
                subscription_tier=tier,
                subscription_expires_at=expires_at,
                updated_at=datetime.now(UTC),
            )
        )
    invalidate_user_cache(user_id)


def get_user_tier(user_id: int) -> str:
    """Get user's subscription tier.

    Returns 'free' if:
    - User not found
    - User has no subscription
    - The cached expiry has passed (the sweep may not have run yet)

    Returns 'pro' otherwise.
    """
    profile = lookup_user(user_id)
    if not profile:
        return TIER_FREE

    tier = profile["subscription_tier"]
    expires_at = profile["subscription_expires_at"]
    if tier == TIER_PRO and expires_at and expires_at < datetime.now(UTC):
        return TIER_FREE
    return tier or TIER_FREE


def refresh_entitlement(user_id: int, now: datetime | None = None) -> str:
    """Recompute the user's tier from their subscription rows.

    Used for upgrades and downgrades alike: the user is ``pro`` until the
    latest expiry among entitling rows still inside their window, and
    ``free`` when there is no such row. Safe to call repeatedly.
    """
    expires_at = subscription_store.latest_entitling_expiry(user_id, now)
    if expires_at is None:
        set_user_tier(user_id, TIER_FREE, None)
        log.info(f"[Entitlement] User {user_id} is now {TIER_FREE}")
        return TIER_FREE

    set_user_tier(user_id, TIER_PRO, expires_at)
    log.info(f"[Entitlement] User {user_id} is {TIER_PRO} until {expires_at.isoformat()}")
    return TIER_PRO


async def require_pro(user_id: int = Depends(auth.get_current_user_id)) -> bool:
    """FastAPI dependency that raises 403 if the user is not on the paid tier.

        @router.post("/pro-feature")
        def pro_feature(_: bool = Depends(require_pro)):
            ...
    """
    if get_user_tier(user_id) != TIER_PRO:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This feature requires a Pro subscription"
        )
    return True
