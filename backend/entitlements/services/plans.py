"""Plan catalog.

The active plan list is cached in Redis for PLANS_CACHE_TTL_SECONDS. Plans are
changed by admins outside this service, who call ``invalidate_plans_cache``
(or wait out the TTL). Product lookups during verification always read the
database.
"""
from __future__ import annotations

import logging

import sqlalchemy as sa

from entitlements import cache
from entitlements import database as db
from entitlements.config import settings
from entitlements.models import Plan, Storefront, plans

log = logging.getLogger(__name__)


def list_active_plans() -> list[Plan]:
    """Active plans ordered by ascending price."""
    cached = cache.get_json(cache.PLANS_KEY)
    if isinstance(cached, list):
        try:
            return [Plan.from_dict(item) for item in cached]
        except (KeyError, TypeError, ArithmeticError) as e:
            log.warning(f"[Plans] Ignoring malformed cached catalog: {e}")

    with db.engine.begin() as conn:
        rows = conn.execute(
            sa.select(plans)
            .where(plans.c.is_active.is_(True))
            .order_by(plans.c.price_usd.asc(), plans.c.id.asc())
        ).fetchall()

    active = [Plan.from_row(row) for row in rows]
    cache.set_json(cache.PLANS_KEY, [plan.to_dict() for plan in active], settings.PLANS_CACHE_TTL_SECONDS)
    log.info(f"[Plans] Loaded {len(active)} active plans from the database")
    return active


def invalidate_plans_cache() -> None:
    cache.delete(cache.PLANS_KEY)


def find_plan_for_product(storefront: Storefront, product_id: str) -> Plan | None:
    column = plans.c.apple_product_id if storefront == Storefront.APPLE else plans.c.google_product_id
    with db.engine.begin() as conn:
        row = conn.execute(
            sa.select(plans).where(column == product_id, plans.c.is_active.is_(True))
        ).fetchone()
    return Plan.from_row(row) if row else None


def get_plan(plan_id: int) -> Plan | None:
    with db.engine.begin() as conn:
        row = conn.execute(sa.select(plans).where(plans.c.id == plan_id)).fetchone()
    return Plan.from_row(row) if row else None
