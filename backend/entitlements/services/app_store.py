"""Apple App Store receipt validation and signed-payload decoding.

Receipts submitted by the app are validated with Apple's verifyReceipt
endpoint using the app-specific shared secret:
   - APPLE_SHARED_SECRET
   - APPLE_VERIFY_URL_PRODUCTION / APPLE_VERIFY_URL_SANDBOX (defaults are Apple's)

Production is always tried first. A sandbox receipt sent to production
answers with status 21007, in which case the same body is sent once to the
sandbox endpoint (this is the flow Apple recommends for App Review builds).

App Store Server Notifications V2 arrive as JWS strings signed with a
certificate chain rooted at Apple Root CA - G3; ``decode_signed_payload``
checks that chain before trusting a payload.

Documentation:
https://developer.apple.com/documentation/appstorereceipts/verifyreceipt
https://developer.apple.com/documentation/appstoreservernotifications
"""
from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, UTC
from typing import Any

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from entitlements.config import settings
from entitlements.errors import ConfigurationError, InvalidReceiptError, StorefrontUnavailableError
from entitlements.models import Storefront, ms_to_datetime
from entitlements.services.verification import ReceiptVerifier, VerificationResult

log = logging.getLogger(__name__)

# verifyReceipt status codes
STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007
# Apple asks callers to retry these later
RETRYABLE_STATUSES = {21005, 21009}
RETRYABLE_STATUS_RANGE = range(21100, 21200)


class AppStoreVerifier(ReceiptVerifier):
    """Validates base64 App Store receipts against verifyReceipt."""

    storefront = Storefront.APPLE

    async def verify(self, receipt: str) -> VerificationResult:
        shared_secret = settings.APPLE_SHARED_SECRET
        if not shared_secret:
            raise ConfigurationError("Apple shared secret is not configured")

        if not receipt or not receipt.strip():
            raise InvalidReceiptError("Receipt data is required", field="receipt_data")

        payload = {
            "receipt-data": receipt,
            "password": shared_secret,
            "exclude-old-transactions": True,
        }

        async with self._client() as client:
            result = await self._post(client, settings.APPLE_VERIFY_URL_PRODUCTION, payload)

            if result.get("status") == STATUS_SANDBOX_RECEIPT:
                log.info("[AppStore] Sandbox receipt sent to production, retrying against sandbox")
                result = await self._post(client, settings.APPLE_VERIFY_URL_SANDBOX, payload)

        status = result.get("status")
        if not isinstance(status, int):
            raise StorefrontUnavailableError("App Store response is missing a status")

        if status != STATUS_OK:
            if status in RETRYABLE_STATUSES or status in RETRYABLE_STATUS_RANGE or result.get("is-retryable"):
                log.warning(f"[AppStore] Retryable verification status {status}")
                raise StorefrontUnavailableError(f"App Store is temporarily unable to verify receipts (status {status})")
            log.warning(f"[AppStore] Receipt verification failed with status {status}")
            raise InvalidReceiptError(
                f"Apple verification failed with status {status}",
                field="receipt_data",
            )

        try:
            return self._parse_result(result)
        except (KeyError, TypeError, ValueError) as e:
            raise StorefrontUnavailableError(f"Unexpected App Store response shape: {e}")

    async def _post(self, client: httpx.AsyncClient, url: str, payload: dict) -> dict[str, Any]:
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            log.warning(f"[AppStore] Request to {url} failed: {e!r}")
            raise self._transport_error(e)

        if response.status_code != 200:
            log.warning(f"[AppStore] Unexpected HTTP {response.status_code} from {url}: {response.text[:200]}")
            raise StorefrontUnavailableError(f"App Store returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise StorefrontUnavailableError("App Store returned a non-JSON body")

        if not isinstance(data, dict):
            raise StorefrontUnavailableError("App Store returned an unexpected body")
        return data

    def _parse_result(self, result: dict[str, Any]) -> VerificationResult:
        transactions = [
            tx for tx in (result.get("latest_receipt_info") or [])
            if isinstance(tx, dict) and tx.get("expires_date_ms")
        ]
        if not transactions:
            raise InvalidReceiptError("No subscription info found in receipt", field="receipt_data")

        # Most recent transaction of the renewal chain
        latest = max(transactions, key=lambda tx: int(tx["expires_date_ms"]))
        original_transaction_id = str(latest["original_transaction_id"])

        # The auto-renew flag only lives in the pending renewal block
        pending_renewal = next(
            (
                info for info in (result.get("pending_renewal_info") or [])
                if isinstance(info, dict)
                and str(info.get("original_transaction_id")) == original_transaction_id
            ),
            None,
        )

        return VerificationResult(
            product_id=str(latest["product_id"]),
            platform_subscription_id=original_transaction_id,
            expires_at=ms_to_datetime(latest["expires_date_ms"]),
            is_auto_renewing=bool(pending_renewal) and str(pending_renewal.get("auto_renew_status")) == "1",
            is_cancelled=bool(latest.get("cancellation_date_ms")),
            starts_at=ms_to_datetime(latest.get("purchase_date_ms")),
        )


# ==================== Signed payloads (JWS) ====================

def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _verify_certificate_chain(x5c: list[str]) -> x509.Certificate:
    """Check the x5c chain and return the leaf certificate.

    Each certificate must be issued by the next one, all must be inside
    their validity window, and the last must be the trusted Apple root.
    """
    if len(x5c) < 2:
        raise ValueError("Certificate chain too short")

    certs = [x509.load_der_x509_certificate(base64.b64decode(c)) for c in x5c]
    now = datetime.now(UTC)

    for cert in certs:
        if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
            raise ValueError(f"Certificate outside validity window: {cert.subject.rfc4514_string()}")

    for cert, issuer in zip(certs, certs[1:]):
        try:
            cert.verify_directly_issued_by(issuer)
        except (InvalidSignature, ValueError, TypeError) as e:
            raise ValueError(f"Broken certificate chain: {e}")

    expected = settings.APPLE_ROOT_CA_SHA256.replace(":", "").lower()
    if certs[-1].fingerprint(hashes.SHA256()).hex() != expected:
        raise ValueError("Certificate chain is not rooted at the trusted Apple root")

    return certs[0]


def decode_signed_payload(signed_payload: str, verify: bool = True) -> dict[str, Any]:
    """Decode and optionally verify a JWS signed payload from Apple.

    Args:
        signed_payload: The JWS string (header.payload.signature)
        verify: Whether to verify the certificate chain and signature

    Returns:
        The decoded payload as a dictionary

    Raises:
        ValueError: malformed JWS, untrusted chain or bad signature
    """
    parts = signed_payload.split(".") if isinstance(signed_payload, str) else []
    if len(parts) != 3:
        raise ValueError("Invalid JWS format")

    header_b64, payload_b64, signature_b64 = parts
    try:
        header = json.loads(_b64url_decode(header_b64))
        payload = json.loads(_b64url_decode(payload_b64))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid JWS encoding: {e}")

    if not isinstance(payload, dict):
        raise ValueError("JWS payload is not an object")

    if verify:
        if header.get("alg") != "ES256":
            raise ValueError(f"Unexpected JWS algorithm: {header.get('alg')}")

        leaf = _verify_certificate_chain(header.get("x5c") or [])
        public_key = leaf.public_key()
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ValueError("Unexpected key type in certificate")

        # ES256 signatures in JWS are raw R||S; cryptography wants DER
        raw_signature = _b64url_decode(signature_b64)
        if len(raw_signature) != 64:
            raise ValueError("Invalid ES256 signature length")
        r = int.from_bytes(raw_signature[:32], byteorder="big")
        s = int.from_bytes(raw_signature[32:], byteorder="big")

        try:
            public_key.verify(
                encode_dss_signature(r, s),
                f"{header_b64}.{payload_b64}".encode(),
                ec.ECDSA(hashes.SHA256()),
            )
        except InvalidSignature:
            raise ValueError("Invalid JWS signature")

    return payload
