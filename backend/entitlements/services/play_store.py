"""Google Play Developer API integration for subscription validation.

Setup required in Google Play Console / Google Cloud:
1. Create a service account with access to the Play Developer API
2. Grant it "View financial data" in Play Console
3. Download the JSON key and configure:
   - GOOGLE_SERVICE_ACCOUNT_KEY (contents of the JSON key file)
   - GOOGLE_PLAY_PACKAGE_NAME (optional, rejects receipts for other apps)

The app submits receipts as JSON: {"packageName", "productId", "purchaseToken"}.
The purchase token identifies the renewal chain and stays the same across
renewals, so it is used as the platform subscription id.

Documentation:
https://developers.google.com/android-publisher/api-ref/rest/v3/purchases.subscriptions/get
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib.parse import quote

import httpx
import jwt  # PyJWT

from entitlements import cache
from entitlements.config import settings
from entitlements.errors import ConfigurationError, InvalidReceiptError, StorefrontUnavailableError
from entitlements.models import Storefront, ms_to_datetime
from entitlements.services.verification import ReceiptVerifier, VerificationResult

log = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
# Refresh the access token this long before Google expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def parse_play_receipt(receipt: str) -> dict[str, str]:
    """Parse the structured Play receipt submitted by the app."""
    try:
        parsed = json.loads(receipt)
    except (TypeError, ValueError):
        raise InvalidReceiptError("Receipt data must be valid JSON for Google Play", field="receipt_data")

    if not isinstance(parsed, dict):
        raise InvalidReceiptError("Receipt data must be a JSON object for Google Play", field="receipt_data")

    fields = {key: parsed.get(key) for key in ("packageName", "productId", "purchaseToken")}
    if not all(isinstance(value, str) and value for value in fields.values()):
        raise InvalidReceiptError("Missing packageName, productId, or purchaseToken", field="receipt_data")
    return fields


class GoogleTokenProvider:
    """OAuth2 access tokens for the service account, cached in Redis.

    Concurrent cache misses may each fetch a token; that is harmless, so
    there is no lock around the refresh.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def _service_account(self) -> dict[str, Any]:
        raw = settings.GOOGLE_SERVICE_ACCOUNT_KEY
        if not raw:
            raise ConfigurationError("Google service account key is not configured")
        try:
            account = json.loads(raw)
        except ValueError:
            raise ConfigurationError("Invalid Google service account key JSON")
        if not isinstance(account, dict) or not account.get("client_email") or not account.get("private_key"):
            raise ConfigurationError("Google service account key is missing client_email or private_key")
        return account

    def _signed_assertion(self, account: dict[str, Any], token_uri: str) -> str:
        now = int(time.time())
        claims = {
            "iss": account["client_email"],
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": account["private_key_id"]} if account.get("private_key_id") else None
        try:
            return jwt.encode(claims, account["private_key"], algorithm="RS256", headers=headers)
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise ConfigurationError(f"Unable to sign Google service account assertion: {e}")

    async def get_access_token(self) -> str:
        cached = cache.get_value(cache.GOOGLE_TOKEN_KEY)
        if cached:
            return cached

        account = self._service_account()
        token_uri = account.get("token_uri") or settings.GOOGLE_TOKEN_URI
        assertion = self._signed_assertion(account, token_uri)

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=settings.STOREFRONT_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
        except httpx.HTTPError as e:
            log.warning(f"[PlayStore] Token request failed: {e!r}")
            raise StorefrontUnavailableError("Google OAuth token endpoint unreachable")

        if response.status_code >= 500:
            raise StorefrontUnavailableError(f"Google OAuth token endpoint returned HTTP {response.status_code}")
        if response.status_code != 200:
            log.error(f"[PlayStore] Token request rejected: {response.status_code} - {response.text[:200]}")
            raise ConfigurationError("Failed to obtain Google access token")

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError):
            raise StorefrontUnavailableError("Google OAuth token endpoint returned an unexpected body")

        cache.set_value(cache.GOOGLE_TOKEN_KEY, access_token, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        log.info(f"[PlayStore] Obtained access token valid for {expires_in}s")
        return access_token

    def invalidate(self) -> None:
        cache.delete(cache.GOOGLE_TOKEN_KEY)


class PlayStoreVerifier(ReceiptVerifier):
    """Validates Play subscription purchase tokens."""

    storefront = Storefront.GOOGLE

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        token_provider: GoogleTokenProvider | None = None,
    ):
        super().__init__(transport)
        self.token_provider = token_provider or GoogleTokenProvider(transport)

    async def verify(self, receipt: str) -> VerificationResult:
        fields = parse_play_receipt(receipt)
        package_name = fields["packageName"]
        product_id = fields["productId"]
        purchase_token = fields["purchaseToken"]

        expected_package = settings.GOOGLE_PLAY_PACKAGE_NAME
        if expected_package and package_name != expected_package:
            log.warning(f"[PlayStore] Receipt for unexpected package {package_name}")
            raise InvalidReceiptError(f"Receipt belongs to another app: {package_name}", field="receipt_data")

        access_token = await self.token_provider.get_access_token()
        url = (
            f"{settings.GOOGLE_PLAY_API_URL}/applications/{quote(package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}/tokens/{quote(purchase_token, safe='')}"
        )

        try:
            async with self._client() as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            log.warning(f"[PlayStore] Verification request failed: {e!r}")
            raise self._transport_error(e)

        if response.status_code == 401:
            # Token revoked or expired early; next attempt fetches a fresh one
            self.token_provider.invalidate()
            raise StorefrontUnavailableError("Google Play rejected the access token")
        if response.status_code == 429 or response.status_code >= 500:
            raise StorefrontUnavailableError(f"Google Play returned HTTP {response.status_code}")
        if not 200 <= response.status_code < 300:
            log.warning(f"[PlayStore] Receipt verification failed: {response.status_code} - {response.text[:200]}")
            raise InvalidReceiptError("Google Play verification failed", field="receipt_data")

        try:
            result = response.json()
            expires_at = ms_to_datetime(result["expiryTimeMillis"])
        except (ValueError, KeyError, TypeError):
            raise StorefrontUnavailableError("Google Play returned an unexpected body")

        if expires_at is None:
            raise StorefrontUnavailableError("Google Play response is missing expiryTimeMillis")

        return VerificationResult(
            product_id=result.get("productId") or product_id,
            platform_subscription_id=purchase_token,
            expires_at=expires_at,
            is_auto_renewing=bool(result.get("autoRenewing", False)),
            is_cancelled=result.get("cancelReason") is not None,
            starts_at=ms_to_datetime(result.get("startTimeMillis")),
        )
