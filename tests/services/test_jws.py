"""Tests for compact JWS verification"""
import base64
import json

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from conftest import (
    ROGUE_PRIVATE_KEY_PEM,
    TEST_PRIVATE_KEY,
    TEST_JWKS,
    TEST_KID,
    b64url,
    sign_jws,
)
from entitlements.services.jws import (
    KeySet,
    MalformedTokenError,
    SignatureMismatchError,
    TrustFailure,
    UnknownKeyError,
    UnsupportedAlgorithmError,
    verify_jws,
)


def _flip_signature_bit(token: str) -> str:
    header, payload, signature = token.split(".")
    raw = bytearray(base64.urlsafe_b64decode(signature + "=" * (-len(signature) % 4)))
    raw[len(raw) // 2] ^= 0x01
    return f"{header}.{payload}.{b64url(bytes(raw))}"


# ============================================================================
# KeySet Tests
# ============================================================================

def test_key_set_from_jwks():
    """Keys are indexed by kid"""
    key_set = KeySet.from_jwks(TEST_JWKS)

    assert len(key_set) == 1
    assert TEST_KID in key_set
    assert "other" not in key_set
    assert key_set.get(TEST_KID).kid == TEST_KID


def test_key_set_rejects_non_rsa_keys():
    """Only RSA keys can be trusted"""
    with pytest.raises(ValueError):
        KeySet.from_jwks({"keys": [{"kty": "EC", "kid": "ec-key", "crv": "P-256"}]})


def test_key_set_requires_modulus_and_exponent():
    with pytest.raises(ValueError):
        KeySet.from_jwks({"keys": [{"kty": "RSA", "kid": "no-n", "e": "AQAB"}]})


def test_default_apple_keys_load():
    """The built-in Apple key set parses"""
    from entitlements.config import DEFAULT_APPLE_JWKS

    key_set = KeySet.from_jwks(DEFAULT_APPLE_JWKS)

    assert len(key_set) == 3
    assert "rs0M3kOV9p" in key_set


# ============================================================================
# verify_jws Tests
# ============================================================================

def test_verify_valid_token(key_set):
    """A token signed by a trusted key returns its payload"""
    token = sign_jws({"hello": "world", "n": 1})

    assert verify_jws(token, key_set) == {"hello": "world", "n": 1}


def test_verify_rejects_flipped_signature_bit(key_set):
    """Changing one bit of the signature breaks verification"""
    token = _flip_signature_bit(sign_jws({"notificationType": "DID_RENEW"}))

    with pytest.raises(SignatureMismatchError):
        verify_jws(token, key_set)


def test_verify_rejects_tampered_payload(key_set):
    """Swapping in a different payload invalidates the signature"""
    header, _, signature = sign_jws({"amount": 1}).split(".")
    forged_payload = b64url(json.dumps({"amount": 1000000}).encode())

    with pytest.raises(SignatureMismatchError):
        verify_jws(f"{header}.{forged_payload}.{signature}", key_set)


def test_verify_rejects_unknown_kid(key_set):
    token = sign_jws({"a": 1}, kid="not-a-trusted-key")

    with pytest.raises(UnknownKeyError):
        verify_jws(token, key_set)


def test_verify_rejects_untrusted_key_with_trusted_kid(key_set):
    """A rogue key claiming a trusted kid fails signature verification"""
    token = sign_jws({"a": 1}, key=ROGUE_PRIVATE_KEY_PEM)

    with pytest.raises(SignatureMismatchError):
        verify_jws(token, key_set)


def test_verify_rejects_hs256(key_set):
    """HMAC tokens are refused even with a trusted kid"""
    token = sign_jws({"a": 1}, key="shared-secret", algorithm="HS256")

    with pytest.raises(UnsupportedAlgorithmError):
        verify_jws(token, key_set)


def test_verify_rejects_alg_none(key_set):
    header = b64url(json.dumps({"alg": "none", "kid": TEST_KID}).encode())
    payload = b64url(json.dumps({"a": 1}).encode())

    with pytest.raises(UnsupportedAlgorithmError):
        verify_jws(f"{header}.{payload}.{b64url(b'sig')}", key_set)


def test_trust_failures_share_a_base_class(key_set):
    """Callers can treat every trust problem alike"""
    with pytest.raises(TrustFailure):
        verify_jws(sign_jws({"a": 1}, kid="unknown"), key_set)


@pytest.mark.parametrize("token", [
    "",
    "only.two",
    "a.b.c.d",
    "..",
    "not-base64!.also-not.sig",
])
def test_verify_rejects_malformed_tokens(key_set, token):
    with pytest.raises(MalformedTokenError):
        verify_jws(token, key_set)


def test_verify_rejects_header_without_kid(key_set):
    header = b64url(json.dumps({"alg": "RS256"}).encode())
    payload = b64url(json.dumps({"a": 1}).encode())

    with pytest.raises(MalformedTokenError):
        verify_jws(f"{header}.{payload}.{b64url(b'sig')}", key_set)


def test_verify_rejects_non_object_payload(key_set):
    """A correctly signed array payload is still malformed"""
    header = b64url(json.dumps({"alg": "RS256", "kid": TEST_KID}).encode())
    payload = b64url(json.dumps([1, 2, 3]).encode())
    # Signature is checked first, so sign the exact bytes
    signature = TEST_PRIVATE_KEY.sign(f"{header}.{payload}".encode(), padding.PKCS1v15(), hashes.SHA256())

    with pytest.raises(MalformedTokenError):
        verify_jws(f"{header}.{payload}.{b64url(signature)}", key_set)
