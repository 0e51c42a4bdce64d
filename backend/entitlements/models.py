"""Table definitions and row types for plans, subscriptions and users."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

metadata = sa.MetaData()

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


class Storefront(str, Enum):
    APPLE = "apple"
    GOOGLE = "google"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    GRACE_PERIOD = "grace_period"
    BILLING_RETRY = "billing_retry"


# Statuses that grant the paid tier. "cancelled" is excluded even while the
# paid window is still open.
ENTITLING_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
    SubscriptionStatus.BILLING_RETRY,
)

TIER_FREE = "free"
TIER_PRO = "pro"


users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("email", sa.String(255), unique=True, nullable=True),
    sa.Column("subscription_tier", sa.String(20), nullable=False, server_default=TIER_FREE),
    sa.Column("subscription_expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
)

plans = sa.Table(
    "plans",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("name", sa.String(50), nullable=False),
    sa.Column("apple_product_id", sa.String(100), unique=True, nullable=True),
    sa.Column("google_product_id", sa.String(100), unique=True, nullable=True),
    sa.Column("price_usd", sa.Numeric(10, 2), nullable=False),
    sa.Column("duration_months", sa.Integer(), nullable=False),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("features", JSONType, nullable=False, default=dict),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Index("idx_plans_is_active", "is_active"),
)

subscriptions = sa.Table(
    "subscriptions",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("plan_id", sa.Integer(), sa.ForeignKey("plans.id", ondelete="SET NULL"), nullable=True),
    sa.Column("platform", sa.String(20), nullable=False),
    sa.Column("platform_subscription_id", sa.String(512), nullable=False),
    sa.Column("receipt_data", sa.Text(), nullable=True),
    sa.Column("status", sa.String(20), nullable=False, server_default=SubscriptionStatus.ACTIVE.value),
    sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("is_auto_renewing", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("platform", "platform_subscription_id", name="uq_subscriptions_platform_chain"),
    sa.CheckConstraint("expires_at >= starts_at", name="chk_subscriptions_window"),
    sa.Index("idx_subscriptions_user_id", "user_id"),
    sa.Index("idx_subscriptions_status", "status"),
    sa.Index("idx_subscriptions_user_status_expires", "user_id", "status", "expires_at"),
)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def ms_to_datetime(value: Any) -> datetime | None:
    """Convert a storefront epoch-milliseconds value (int or numeric string)."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


@dataclass
class Plan:
    id: int
    name: str
    apple_product_id: str | None
    google_product_id: str | None
    price_usd: Decimal
    duration_months: int
    is_active: bool
    features: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "Plan":
        return cls(
            id=row.id,
            name=row.name,
            apple_product_id=row.apple_product_id,
            google_product_id=row.google_product_id,
            price_usd=Decimal(str(row.price_usd)),
            duration_months=row.duration_months,
            is_active=bool(row.is_active),
            features=dict(row.features or {}),
        )

    def product_id_for(self, storefront: Storefront) -> str | None:
        return self.apple_product_id if storefront == Storefront.APPLE else self.google_product_id

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe representation (used for the plan catalog cache)."""
        return {
            "id": self.id,
            "name": self.name,
            "apple_product_id": self.apple_product_id,
            "google_product_id": self.google_product_id,
            "price_usd": str(self.price_usd),
            "duration_months": self.duration_months,
            "is_active": self.is_active,
            "features": self.features,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        return cls(
            id=data["id"],
            name=data["name"],
            apple_product_id=data.get("apple_product_id"),
            google_product_id=data.get("google_product_id"),
            price_usd=Decimal(data["price_usd"]),
            duration_months=data["duration_months"],
            is_active=data.get("is_active", True),
            features=data.get("features") or {},
        )


@dataclass
class Subscription:
    id: int
    user_id: int
    plan_id: int | None
    platform: Storefront
    platform_subscription_id: str
    receipt_data: str | None
    status: SubscriptionStatus
    starts_at: datetime
    expires_at: datetime
    cancelled_at: datetime | None
    is_auto_renewing: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Subscription":
        return cls(
            id=row.id,
            user_id=row.user_id,
            plan_id=row.plan_id,
            platform=Storefront(row.platform),
            platform_subscription_id=row.platform_subscription_id,
            receipt_data=row.receipt_data,
            status=SubscriptionStatus(row.status),
            starts_at=as_utc(row.starts_at),
            expires_at=as_utc(row.expires_at),
            cancelled_at=as_utc(row.cancelled_at),
            is_auto_renewing=bool(row.is_auto_renewing),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    @property
    def is_entitling(self) -> bool:
        return self.status in ENTITLING_STATUSES
