"""Shared test setup.

The environment is configured before anything under ``entitlements`` is
imported: settings are read at import time, so the database URL, bearer
secret and trusted Apple key set must already be in place.
"""
import base64
import json
import os
import tempfile
import uuid
from datetime import datetime, timedelta, UTC
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jws, jwt

ROOT = Path(__file__).resolve().parent.parent

_db_dir = tempfile.mkdtemp(prefix="entitlements-tests-")
TEST_DATABASE_URL = f"sqlite:///{_db_dir}/entitlements.db"

TEST_SECRET_KEY = "test-secret-key"
TEST_KID = "test-signing-key"
TEST_BUNDLE_ID = "com.example.entitlements"

TEST_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
TEST_PRIVATE_KEY_PEM = TEST_PRIVATE_KEY.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
).decode("ascii")

# Signs with a key Apple never published
ROGUE_PRIVATE_KEY_PEM = rsa.generate_private_key(public_exponent=65537, key_size=2048).private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
).decode("ascii")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _int_to_b64url(value: int) -> str:
    return b64url(value.to_bytes((value.bit_length() + 7) // 8, byteorder="big"))


_public_numbers = TEST_PRIVATE_KEY.public_key().public_numbers()
TEST_JWKS = {
    "keys": [
        {
            "kty": "RSA",
            "kid": TEST_KID,
            "use": "sig",
            "alg": "RS256",
            "n": _int_to_b64url(_public_numbers.n),
            "e": _int_to_b64url(_public_numbers.e),
        }
    ]
}

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["SECRET_KEY"] = TEST_SECRET_KEY
os.environ["APPLE_JWKS"] = json.dumps(TEST_JWKS)
os.environ["APPLE_SHARED_SECRET"] = "test-shared-secret"
os.environ["LEDGER_URL"] = "https://ledger.test"
os.environ["LEDGER_SERVICE_KEY"] = "test-service-key"
os.environ["SIDE_EFFECT_RETRY_AFTER_SECONDS"] = "300"

import sqlalchemy  # noqa: E402
from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402

from entitlements import database as db  # noqa: E402
from entitlements.services.ledger import EntitlementBroadcaster, LedgerClient  # noqa: E402

SUBSCRIPTION_PRODUCT_ID = "premium_pass_monthly"


# ==================== Signing helpers ====================

def sign_jws(payload: dict, kid: str = TEST_KID, key: str = TEST_PRIVATE_KEY_PEM, algorithm: str = "RS256") -> str:
    """Sign a payload the way Apple does, as a compact JWS with a ``kid`` header."""
    return jws.sign(payload, key, headers={"kid": kid}, algorithm=algorithm)


def make_transaction(
    original_transaction_id: str,
    transaction_id: str,
    product_id: str = SUBSCRIPTION_PRODUCT_ID,
    expires_at: datetime | None = None,
    purchase_date: datetime | None = None,
    revocation_date: datetime | None = None,
) -> dict:
    """Decoded ``signedTransactionInfo`` payload."""
    purchase_date = purchase_date or datetime.now(UTC)
    transaction = {
        "transactionId": transaction_id,
        "originalTransactionId": original_transaction_id,
        "productId": product_id,
        "bundleId": TEST_BUNDLE_ID,
        "purchaseDate": int(purchase_date.timestamp() * 1000),
        "environment": "Sandbox",
        "inAppOwnershipType": "PURCHASED",
    }
    if expires_at is not None:
        transaction["expiresDate"] = int(expires_at.timestamp() * 1000)
    if revocation_date is not None:
        transaction["revocationDate"] = int(revocation_date.timestamp() * 1000)
    return transaction


def make_notification(
    notification_type: str,
    transaction: dict,
    notification_uuid: str | None = None,
    subtype: str | None = None,
    kid: str = TEST_KID,
    key: str = TEST_PRIVATE_KEY_PEM,
    transaction_kid: str = TEST_KID,
    transaction_key: str = TEST_PRIVATE_KEY_PEM,
) -> str:
    """Build a signed S2S notification with a separately signed transaction."""
    payload = {
        "notificationType": notification_type,
        "notificationUUID": notification_uuid or str(uuid.uuid4()),
        "version": "2.0",
        "signedDate": int(datetime.now(UTC).timestamp() * 1000),
        "data": {
            "bundleId": TEST_BUNDLE_ID,
            "environment": "Sandbox",
            "signedTransactionInfo": sign_jws(transaction, kid=transaction_kid, key=transaction_key),
        },
    }
    if subtype:
        payload["subtype"] = subtype
    return sign_jws(payload, kid=kid, key=key)


def make_access_token(user_id: str, token_type: str = "access") -> str:
    return jwt.encode(
        {"sub": user_id, "typ": token_type, "exp": datetime.now(UTC) + timedelta(hours=1)},
        TEST_SECRET_KEY,
        algorithm="HS256",
    )


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_access_token(user_id)}"}


# ==================== Database helpers ====================

def count_rows(table: str) -> int:
    with db.engine.begin() as conn:
        return conn.execute(sqlalchemy.text(f"SELECT COUNT(*) FROM {table}")).scalar()


def fetch_lineage(original_transaction_id: str, platform: str = "ios"):
    with db.engine.begin() as conn:
        return conn.execute(
            sqlalchemy.text(
                """
                SELECT * FROM subscriptions
                WHERE original_transaction_id = :original_transaction_id AND platform = :platform
                """
            ),
            {"original_transaction_id": original_transaction_id, "platform": platform}
        ).fetchone()


def fetch_event(event_id: str):
    with db.engine.begin() as conn:
        return conn.execute(
            sqlalchemy.text("SELECT * FROM iap_events WHERE event_id = :event_id"),
            {"event_id": event_id}
        ).fetchone()


# ==================== Fixtures ====================

@pytest.fixture(scope="session", autouse=True)
def migrated_database():
    """Create the schema once with the real migrations."""
    alembic_config = Config()
    alembic_config.set_main_option("script_location", str(ROOT / "alembic"))
    alembic_config.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.upgrade(alembic_config, "head")
    yield


@pytest.fixture(autouse=True)
def clean_tables(migrated_database):
    """Every test starts from empty entitlement tables."""
    with db.engine.begin() as conn:
        conn.execute(sqlalchemy.text("DELETE FROM iap_events"))
        conn.execute(sqlalchemy.text("DELETE FROM subscriptions"))
    yield


@pytest.fixture
def ledger():
    """Ledger double recording add_tokens/set_premium_flag calls in order."""
    fake = MagicMock(spec=LedgerClient)
    fake.add_tokens = AsyncMock()
    fake.set_premium_flag = AsyncMock()
    fake.call = AsyncMock()
    return fake


@pytest.fixture
def broadcaster():
    fake = MagicMock(spec=EntitlementBroadcaster)
    fake.broadcast_entitlement_change = AsyncMock()
    return fake


@pytest.fixture
def key_set():
    from entitlements.services.jws import KeySet
    return KeySet.from_jwks(TEST_JWKS)
