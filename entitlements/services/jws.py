"""Compact JWS verification against a static RSA key set.

Apple signs S2S notifications (and every nested transaction/renewal field
inside them) as compact JWS tokens. This module verifies such a token against
an injected JWKS trust root and returns the decoded payload, failing closed on
anything it cannot prove.

Only RS256 (RSASSA-PKCS1-v1_5 with SHA-256) is trusted. The ``alg`` header is
checked against that pin, never used to pick an algorithm.
"""

import base64
import binascii
import json
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

TRUSTED_ALGORITHM = "RS256"


class JWSVerificationError(ValueError):
    """Base class for every reason a token is rejected."""


class MalformedTokenError(JWSVerificationError):
    """Token shape, encoding or JSON content is invalid."""


class TrustFailure(JWSVerificationError):
    """Token is well-formed but cannot be trusted."""


class UnknownKeyError(TrustFailure):
    """Header ``kid`` is not in the configured key set."""


class UnsupportedAlgorithmError(TrustFailure):
    """Header ``alg`` is anything other than the pinned algorithm."""


class SignatureMismatchError(TrustFailure):
    """Signature does not verify for the referenced key."""


def _b64url_decode(segment: str) -> bytes:
    """Decode an unpadded base64url segment, rejecting non-alphabet input."""
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError) as e:
        raise MalformedTokenError(f"Invalid base64url segment: {e}") from e


def _b64url_to_int(value: str) -> int:
    return int.from_bytes(_b64url_decode(value), byteorder="big")


def _decode_json_segment(segment: str, name: str) -> dict:
    raw = _b64url_decode(segment)
    try:
        decoded = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedTokenError(f"JWS {name} is not valid JSON") from e
    if not isinstance(decoded, dict):
        raise MalformedTokenError(f"JWS {name} must be a JSON object")
    return decoded


@dataclass(frozen=True)
class TrustedKey:
    """One RSA verification key from the JWKS document."""
    kid: str
    public_key: rsa.RSAPublicKey


class KeySet:
    """Immutable lookup of trusted RSA keys by key id."""

    def __init__(self, keys: list[TrustedKey]):
        self._keys = {key.kid: key for key in keys}

    @classmethod
    def from_jwks(cls, document: dict) -> "KeySet":
        """Build a key set from a JWKS document (``{"keys": [...]}``).

        Raises:
            ValueError: If a key is not RSA or lacks ``kid``/``n``/``e``
        """
        keys = []
        for jwk in document.get("keys", []):
            if jwk.get("kty") != "RSA":
                raise ValueError(f"Unsupported key type in JWKS: {jwk.get('kty')}")
            kid = jwk.get("kid")
            if not kid or not jwk.get("n") or not jwk.get("e"):
                raise ValueError("JWKS key is missing kid, n or e")

            numbers = rsa.RSAPublicNumbers(
                e=_b64url_to_int(jwk["e"]),
                n=_b64url_to_int(jwk["n"]),
            )
            keys.append(TrustedKey(kid=kid, public_key=numbers.public_key()))
        return cls(keys)

    def get(self, kid: str) -> TrustedKey | None:
        return self._keys.get(kid)

    def __contains__(self, kid: str) -> bool:
        return kid in self._keys

    def __len__(self) -> int:
        return len(self._keys)


def verify_jws(token: str, key_set: KeySet) -> dict:
    """Verify a compact JWS token and return its decoded payload.

    Args:
        token: The compact JWS string (header.payload.signature)
        key_set: Trusted keys, looked up by the header's ``kid``

    Returns:
        The payload as a dictionary

    Raises:
        MalformedTokenError: Wrong segment count, bad encoding, missing headers
        UnknownKeyError: ``kid`` not present in ``key_set``
        UnsupportedAlgorithmError: ``alg`` is not RS256
        SignatureMismatchError: Signature does not verify
    """
    if not isinstance(token, str):
        raise MalformedTokenError("JWS must be a string")

    parts = token.strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedTokenError("Invalid JWS format: expected three segments")

    header_b64, payload_b64, signature_b64 = parts
    header = _decode_json_segment(header_b64, "header")

    alg = header.get("alg")
    kid = header.get("kid")
    if not alg or not kid:
        raise MalformedTokenError("JWS header must declare alg and kid")
    if alg != TRUSTED_ALGORITHM:
        raise UnsupportedAlgorithmError(f"Algorithm {alg!r} is not trusted")

    trusted_key = key_set.get(kid)
    if trusted_key is None:
        raise UnknownKeyError(f"Unknown signing key id: {kid}")

    signature = _b64url_decode(signature_b64)
    signed_data = f"{header_b64}.{payload_b64}".encode("ascii")

    try:
        trusted_key.public_key.verify(signature, signed_data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature as e:
        raise SignatureMismatchError(f"Invalid JWS signature for key {kid}") from e

    return _decode_json_segment(payload_b64, "payload")
