"""Tests for storefront notification decoding and App Store JWS verification."""
import base64
import json
from datetime import datetime, timedelta, UTC

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from entitlements.config import settings
from entitlements.models import Storefront
from entitlements.services.app_store import decode_signed_payload
from entitlements.services.notifications import (
    decode_apple_notification,
    decode_google_notification,
)
from entitlements.services.subscription_store import TransitionEvent

EXPIRES_MS = 1893456000000


def _certificate(common_name, issuer_name, public_key, signing_key, is_ca):
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(issuer_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


class SigningChain:
    """A root CA and leaf certificate standing in for Apple's chain."""

    def __init__(self):
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        root_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Root CA")])
        self.root = _certificate("Test Root CA", root_name, self.root_key.public_key(), self.root_key, True)

        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf = _certificate("Test Signer", root_name, self.leaf_key.public_key(), self.root_key, False)

    @property
    def x5c(self):
        return [
            base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()
            for cert in (self.leaf, self.root)
        ]

    @property
    def root_fingerprint(self):
        return self.root.fingerprint(hashes.SHA256()).hex()

    def sign(self, payload, key=None):
        return jwt.encode(payload, key or self.leaf_key, algorithm="ES256", headers={"x5c": self.x5c})


@pytest.fixture(scope="module")
def chain():
    return SigningChain()


@pytest.fixture
def trusted_chain(monkeypatch, chain):
    monkeypatch.setattr(settings, "APPLE_ROOT_CA_SHA256", chain.root_fingerprint)
    monkeypatch.setattr(settings, "APPLE_WEBHOOK_VERIFY_SIGNATURE", True)
    return chain


def apple_v2_body(chain, notification_type, subtype=None, auto_renew=1):
    transaction = chain.sign({"originalTransactionId": "orig_txn_1", "expiresDate": EXPIRES_MS})
    renewal = chain.sign({"originalTransactionId": "orig_txn_1", "autoRenewStatus": auto_renew})
    payload = {
        "notificationType": notification_type,
        "notificationUUID": "b1c2d3",
        "data": {
            "environment": "Sandbox",
            "signedTransactionInfo": transaction,
            "signedRenewalInfo": renewal,
        },
    }
    if subtype:
        payload["subtype"] = subtype
    return {"signedPayload": chain.sign(payload)}


def pubsub_body(notification):
    data = base64.b64encode(json.dumps(notification).encode()).decode()
    return {"message": {"data": data, "messageId": "1"}, "subscription": "projects/p/subscriptions/s"}


# ==================== JWS Verification ====================

def test_signed_payload_verified_against_trusted_root(trusted_chain):
    payload = decode_signed_payload(trusted_chain.sign({"hello": "world"}))
    assert payload == {"hello": "world"}


def test_untrusted_root_is_rejected(monkeypatch, chain):
    """A valid chain under a different root is not Apple's"""
    monkeypatch.setattr(settings, "APPLE_ROOT_CA_SHA256", "00" * 32)

    with pytest.raises(ValueError):
        decode_signed_payload(chain.sign({"hello": "world"}))


def test_signature_from_other_key_is_rejected(trusted_chain):
    """A payload signed by a key other than the leaf certificate's fails"""
    forged = trusted_chain.sign({"hello": "world"}, key=ec.generate_private_key(ec.SECP256R1()))

    with pytest.raises(ValueError):
        decode_signed_payload(forged)


def test_tampered_payload_is_rejected(trusted_chain):
    header, _, signature = trusted_chain.sign({"amount": 1}).split(".")
    tampered = base64.urlsafe_b64encode(json.dumps({"amount": 1000}).encode()).decode().rstrip("=")

    with pytest.raises(ValueError):
        decode_signed_payload(f"{header}.{tampered}.{signature}")


def test_chain_without_root_is_rejected(trusted_chain):
    token = jwt.encode({"a": 1}, trusted_chain.leaf_key, algorithm="ES256", headers={"x5c": trusted_chain.x5c[:1]})

    with pytest.raises(ValueError):
        decode_signed_payload(token)


@pytest.mark.parametrize("value", ["", "a.b", "not-a-jws", "a.b.c"])
def test_malformed_jws_is_rejected(value):
    with pytest.raises(ValueError):
        decode_signed_payload(value)


def test_unverified_decode_skips_chain_checks(monkeypatch, chain):
    monkeypatch.setattr(settings, "APPLE_ROOT_CA_SHA256", "00" * 32)

    assert decode_signed_payload(chain.sign({"x": 1}), verify=False) == {"x": 1}


# ==================== App Store Notifications ====================

@pytest.mark.parametrize("notification_type,event", [
    ("SUBSCRIBED", TransitionEvent.RENEWED),
    ("DID_RENEW", TransitionEvent.RENEWED),
    ("DID_FAIL_TO_RENEW", TransitionEvent.BILLING_FAILED),
    ("GRACE_PERIOD_EXPIRED", TransitionEvent.LAPSED),
    ("EXPIRED", TransitionEvent.LAPSED),
    ("REFUND", TransitionEvent.STOREFRONT_CANCELLED),
    ("REVOKE", TransitionEvent.STOREFRONT_CANCELLED),
    ("DID_CHANGE_RENEWAL_STATUS", TransitionEvent.RENEWAL_PREFERENCE),
    ("CONSUMPTION_REQUEST", None),
])
def test_apple_v2_notification_types(trusted_chain, notification_type, event):
    parsed = decode_apple_notification(apple_v2_body(trusted_chain, notification_type))

    assert parsed.storefront == Storefront.APPLE
    assert parsed.notification_type == notification_type
    assert parsed.event == event
    assert parsed.platform_subscription_id == "orig_txn_1"
    assert int(parsed.expires_at.timestamp() * 1000) == EXPIRES_MS


def test_apple_v2_renewal_status_carries_auto_renew(trusted_chain):
    parsed = decode_apple_notification(
        apple_v2_body(trusted_chain, "DID_CHANGE_RENEWAL_STATUS", subtype="AUTO_RENEW_DISABLED", auto_renew=0)
    )

    assert parsed.is_auto_renewing is False


def test_apple_v2_with_untrusted_signature_is_rejected(monkeypatch, chain):
    """Unverifiable notifications are never processed"""
    monkeypatch.setattr(settings, "APPLE_ROOT_CA_SHA256", "00" * 32)
    monkeypatch.setattr(settings, "APPLE_WEBHOOK_VERIFY_SIGNATURE", True)

    with pytest.raises(ValueError):
        decode_apple_notification(apple_v2_body(chain, "DID_RENEW"))


def test_apple_json_notification():
    """Plain JSON bodies carry the chain id and expiry under data"""
    parsed = decode_apple_notification({
        "notification_type": "DID_RENEW",
        "data": {"original_transaction_id": "orig_txn_1", "expires_date_ms": str(EXPIRES_MS)},
    })

    assert parsed.event == TransitionEvent.RENEWED
    assert parsed.platform_subscription_id == "orig_txn_1"
    assert int(parsed.expires_at.timestamp() * 1000) == EXPIRES_MS


def test_apple_json_notification_top_level_id():
    parsed = decode_apple_notification({"notification_type": "CANCEL", "original_transaction_id": 1000})

    assert parsed.event == TransitionEvent.STOREFRONT_CANCELLED
    assert parsed.platform_subscription_id == "1000"
    assert parsed.expires_at is None


@pytest.mark.parametrize("body", [None, [], "text", {}, {"something": "else"}])
def test_apple_unrecognised_body_is_rejected(body):
    with pytest.raises(ValueError):
        decode_apple_notification(body)


# ==================== Google Play Notifications ====================

@pytest.mark.parametrize("notification_type,event", [
    (1, TransitionEvent.RENEWED),
    (2, TransitionEvent.RENEWED),
    (4, TransitionEvent.RENEWED),
    (7, TransitionEvent.RENEWED),
    (3, TransitionEvent.STOREFRONT_CANCELLED),
    (12, TransitionEvent.STOREFRONT_CANCELLED),
    (5, TransitionEvent.BILLING_FAILED),
    (6, TransitionEvent.GRACE_PERIOD),
    (13, TransitionEvent.LAPSED),
    (10, None),
])
def test_google_notification_types(notification_type, event):
    parsed = decode_google_notification(pubsub_body({
        "version": "1.0",
        "packageName": "com.example.app",
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": "token-abc",
            "subscriptionId": "pro_monthly",
        },
    }))

    assert parsed.storefront == Storefront.GOOGLE
    assert parsed.event == event
    assert parsed.platform_subscription_id == "token-abc"
    assert parsed.reverify is (event == TransitionEvent.RENEWED)


def test_google_test_notification_is_ignored():
    parsed = decode_google_notification(pubsub_body({"packageName": "com.example.app", "testNotification": {}}))

    assert parsed.event is None
    assert parsed.notification_type == "test"


@pytest.mark.parametrize("body", [
    {},
    {"message": {}},
    {"message": {"data": "%%%not-base64%%%"}},
    {"message": {"data": base64.b64encode(b"not json").decode()}},
])
def test_google_undecodable_body_is_rejected(body):
    with pytest.raises(ValueError):
        decode_google_notification(body)
