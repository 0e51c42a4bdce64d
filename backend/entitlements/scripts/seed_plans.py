#!/usr/bin/env python
"""
Seed the default subscription plans.

Existing plans (matched by product id) are left untouched.

Usage:
    python -m entitlements.scripts.seed_plans
    python -m entitlements.scripts.seed_plans --dry-run
"""
from __future__ import annotations

import argparse
from decimal import Decimal

import sqlalchemy as sa

from .. import database as db
from ..models import plans
from ..services.plans import invalidate_plans_cache

DEFAULT_PLANS = [
    {
        "name": "Pro Monthly",
        "apple_product_id": "pro_monthly",
        "google_product_id": "pro_monthly",
        "price_usd": Decimal("4.99"),
        "duration_months": 1,
        "features": {"ad_free": True, "priority_support": True},
    },
    {
        "name": "Pro Annual",
        "apple_product_id": "pro_annual",
        "google_product_id": "pro_annual",
        "price_usd": Decimal("39.99"),
        "duration_months": 12,
        "features": {"ad_free": True, "priority_support": True},
    },
]


def seed(dry_run: bool = False) -> int:
    created = 0
    with db.engine.begin() as conn:
        for plan in DEFAULT_PLANS:
            existing = conn.execute(
                sa.select(plans.c.id).where(plans.c.apple_product_id == plan["apple_product_id"])
            ).fetchone()
            if existing:
                print(f"  exists: {plan['name']} (id {existing.id})")
                continue

            if dry_run:
                print(f"  [DRY RUN] would create: {plan['name']} ${plan['price_usd']}")
                continue

            conn.execute(sa.insert(plans).values(**plan, is_active=True))
            print(f"  created: {plan['name']} ${plan['price_usd']}")
            created += 1

    if created:
        invalidate_plans_cache()
    return created


def main():
    parser = argparse.ArgumentParser(
        description="Seed the default subscription plans"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be created without writing"
    )

    args = parser.parse_args()

    created = seed(args.dry_run)
    print(f"\nCreated {created} plan(s)")


if __name__ == "__main__":
    main()
