"""FastAPI dependencies for the engine's collaborators.

Each ingress resolves its trust root, store client and ledger through these
so tests (and alternative deployments) can swap them with
``app.dependency_overrides``.
"""

from functools import lru_cache

from entitlements import config
from entitlements.services.jws import KeySet
from entitlements.services.ledger import (
    EntitlementBroadcaster,
    LedgerClient,
    broadcaster,
    ledger_client,
)
from entitlements.services.receipt_validator import ReceiptValidator, receipt_validator


@lru_cache()
def get_key_set() -> KeySet:
    """Trusted Apple signing keys, built once from configuration."""
    return KeySet.from_jwks(config.get_settings().APPLE_JWKS)


def get_ledger() -> LedgerClient:
    return ledger_client


def get_broadcaster() -> EntitlementBroadcaster:
    return broadcaster


def get_receipt_validator() -> ReceiptValidator:
    return receipt_validator
