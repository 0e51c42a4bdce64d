"""Storefront-neutral receipt verification contract.

Each storefront gets one verifier that turns its own response format into a
``VerificationResult``. ``get_verifier`` is the single place that picks a
verifier by storefront; nothing downstream branches on the storefront name.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import httpx

from entitlements.config import settings
from entitlements.errors import StorefrontUnavailableError, ValidationError
from entitlements.models import Storefront


@dataclass(frozen=True)
class VerificationResult:
    """Canonical outcome of a successful storefront verification."""
    product_id: str
    platform_subscription_id: str
    expires_at: datetime
    is_auto_renewing: bool
    is_cancelled: bool
    starts_at: datetime | None = None


class ReceiptVerifier:
    """Base class for storefront verifiers."""

    storefront: Storefront

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        # transport is injectable so tests can fake the storefront
        self._transport = transport
        self.timeout = settings.STOREFRONT_TIMEOUT_SECONDS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self.timeout)

    async def verify(self, receipt: str) -> VerificationResult:
        raise NotImplementedError

    def _transport_error(self, e: httpx.HTTPError) -> StorefrontUnavailableError:
        if isinstance(e, httpx.TimeoutException):
            return StorefrontUnavailableError(f"{self.storefront.value} verification timed out")
        return StorefrontUnavailableError(f"{self.storefront.value} verification service unreachable: {e}")


def parse_storefront(value: str | Storefront) -> Storefront:
    if isinstance(value, Storefront):
        return value
    try:
        return Storefront(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown storefront: {value}", field="platform")


def get_verifier(storefront: str | Storefront) -> ReceiptVerifier:
    # Imported here to avoid a cycle: the verifiers import this module
    from entitlements.services.app_store import AppStoreVerifier
    from entitlements.services.play_store import PlayStoreVerifier

    storefront = parse_storefront(storefront)
    if storefront == Storefront.APPLE:
        return AppStoreVerifier()
    return PlayStoreVerifier()
