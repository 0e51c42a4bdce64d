"""Shared test setup.

Points the service at a throwaway SQLite file before anything from
``entitlements`` is imported, swaps the Redis client for an in-memory double
and empties the tables between tests.
"""
import os
import tempfile
from datetime import datetime, timedelta, UTC
from decimal import Decimal

_db_dir = tempfile.mkdtemp(prefix="entitlements-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["APPLE_SHARED_SECRET"] = "test-shared-secret"
os.environ["SECRET_KEY"] = "test-secret-key"

import pytest  # noqa: E402
import sqlalchemy as sa  # noqa: E402

from entitlements import cache  # noqa: E402
from entitlements import database as db  # noqa: E402
from entitlements.models import metadata, plans, subscriptions, users  # noqa: E402
from entitlements.services.verification import ReceiptVerifier, VerificationResult  # noqa: E402

metadata.create_all(db.engine)


class FakeRedis:
    """The subset of the redis-py client the cache module uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class StubVerifier(ReceiptVerifier):
    """Verifier returning a canned result (or raising) without any HTTP."""

    def __init__(self, result: VerificationResult | None = None, error: Exception | None = None):
        super().__init__()
        self.result = result
        self.error = error
        self.calls: list[str] = []

    async def verify(self, receipt: str) -> VerificationResult:
        self.calls.append(receipt)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(cache, "redis_client", client)
    return client


@pytest.fixture(autouse=True)
def clean_tables():
    with db.engine.begin() as conn:
        conn.execute(sa.delete(subscriptions))
        conn.execute(sa.delete(plans))
        conn.execute(sa.delete(users))
    yield


@pytest.fixture
def make_user():
    def _make_user(email: str = "user@example.com", tier: str = "free", expires_at: datetime | None = None) -> int:
        with db.engine.begin() as conn:
            return conn.execute(
                sa.insert(users)
                .values(email=email, subscription_tier=tier, subscription_expires_at=expires_at)
                .returning(users.c.id)
            ).scalar_one()
    return _make_user


@pytest.fixture
def make_plan():
    def _make_plan(
        name: str = "Pro Monthly",
        apple_product_id: str | None = "com.app.pro.monthly",
        google_product_id: str | None = "com.app.pro.monthly.android",
        price_usd: str = "9.99",
        duration_months: int = 1,
        is_active: bool = True,
    ) -> int:
        with db.engine.begin() as conn:
            return conn.execute(
                sa.insert(plans)
                .values(
                    name=name,
                    apple_product_id=apple_product_id,
                    google_product_id=google_product_id,
                    price_usd=Decimal(price_usd),
                    duration_months=duration_months,
                    is_active=is_active,
                    features={"ad_free": True},
                )
                .returning(plans.c.id)
            ).scalar_one()
    return _make_plan


@pytest.fixture
def verification():
    """Build a VerificationResult expiring ``days`` from now."""
    def _verification(
        platform_subscription_id: str = "orig_txn_1",
        product_id: str = "com.app.pro.monthly",
        days: float = 30,
        is_auto_renewing: bool = True,
        is_cancelled: bool = False,
    ) -> VerificationResult:
        now = datetime.now(UTC)
        return VerificationResult(
            product_id=product_id,
            platform_subscription_id=platform_subscription_id,
            expires_at=now + timedelta(days=days),
            is_auto_renewing=is_auto_renewing,
            is_cancelled=is_cancelled,
            starts_at=now - timedelta(minutes=1),
        )
    return _verification


@pytest.fixture
def stub_verifier():
    return StubVerifier
