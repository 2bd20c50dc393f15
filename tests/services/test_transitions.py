"""Tests for the subscription state machine"""
from datetime import datetime, timedelta, UTC
from unittest.mock import call

import pytest

from conftest import fetch_lineage
from entitlements import database as db
from entitlements.services.app_store import TransactionInfo
from entitlements.services.products import SUBSCRIPTION
from entitlements.services.subscription_store import SubscriptionWrite, parse_timestamp, upsert_subscription
from entitlements.services.transitions import (
    Cancellation,
    Refund,
    Renewal,
    Unhandled,
    apply_transition,
    classify,
    dispatch_side_effects,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _transaction(transaction_id="txn-2", expires_at=None, revoked_at=None) -> TransactionInfo:
    return TransactionInfo(
        transaction_id=transaction_id,
        original_transaction_id="orig-1",
        product_id=SUBSCRIPTION.product_id,
        purchase_date_ms=_ms(NOW),
        expires_date_ms=_ms(expires_at) if expires_at else None,
        revocation_date_ms=_ms(revoked_at) if revoked_at else None,
        environment="Sandbox",
        is_family_shared=False,
    )


def _seed_lineage(expires_at: datetime, transaction_id="txn-1", user_id="user-1"):
    with db.engine.begin() as conn:
        upsert_subscription(
            conn,
            SubscriptionWrite(
                user_id=user_id,
                platform="ios",
                product_id=SUBSCRIPTION.product_id,
                transaction_id=transaction_id,
                original_transaction_id="orig-1",
                expires_at=expires_at,
                purchase_date_ms=_ms(NOW - timedelta(days=30)),
            ),
            now=NOW,
        )


# ============================================================================
# classify Tests
# ============================================================================

@pytest.mark.parametrize("notification_type", ["DID_RENEW", "INTERACTIVE_RENEWAL", "SUBSCRIBED"])
def test_classify_renewals(notification_type):
    expires_at = NOW + timedelta(days=30)

    transition = classify(notification_type, _transaction(expires_at=expires_at), NOW)

    assert isinstance(transition, Renewal)
    assert transition.expires_at == expires_at
    assert transition.product == SUBSCRIPTION
    assert transition.description == "Subscription renewal (txn-2)"


def test_classify_renewal_without_expiry_uses_billing_period():
    transition = classify("DID_RENEW", _transaction(), NOW)

    assert transition.expires_at == NOW + timedelta(days=30)


@pytest.mark.parametrize("notification_type", ["CANCEL", "EXPIRED", "REVOKE", "GRACE_PERIOD_EXPIRED"])
def test_classify_cancellations(notification_type):
    transition = classify(notification_type, _transaction(), NOW)

    assert isinstance(transition, Cancellation)
    assert transition.reason == notification_type
    assert transition.ended_at == NOW


def test_classify_cancellation_uses_revocation_date():
    revoked_at = NOW - timedelta(hours=3)

    transition = classify("REVOKE", _transaction(revoked_at=revoked_at), NOW)

    assert transition.ended_at == revoked_at


def test_classify_refund():
    assert isinstance(classify("REFUND", _transaction(), NOW), Refund)


@pytest.mark.parametrize("notification_type", ["DID_CHANGE_RENEWAL_STATUS", "PRICE_INCREASE", "TEST", "SOMETHING_NEW"])
def test_classify_unhandled(notification_type):
    transition = classify(notification_type, _transaction(), NOW)

    assert transition == Unhandled(notification_type=notification_type)


# ============================================================================
# apply_transition Tests
# ============================================================================

def test_apply_renewal_advances_lineage():
    """Renewal moves the lineage to the new transaction and window"""
    _seed_lineage(expires_at=NOW - timedelta(days=1))
    expires_at = NOW + timedelta(days=30)

    with db.engine.begin() as conn:
        changed = apply_transition(conn, classify("DID_RENEW", _transaction(expires_at=expires_at), NOW), NOW)

    assert changed is True
    record = fetch_lineage("orig-1")
    assert record.transaction_id == "txn-2"
    assert bool(record.is_active) is True
    assert parse_timestamp(record.expires_at) == expires_at
    assert record.user_id == "user-1"


def test_apply_renewal_for_recorded_transaction_is_noop():
    """A renewal already reflected on the lineage has no side effects"""
    _seed_lineage(expires_at=NOW + timedelta(days=30), transaction_id="txn-2")

    with db.engine.begin() as conn:
        changed = apply_transition(
            conn, classify("DID_RENEW", _transaction(expires_at=NOW + timedelta(days=30)), NOW), NOW
        )

    assert changed is False


def test_apply_older_renewal_keeps_newer_window():
    """A renewal that arrives after a later one is already reflected"""
    newer_expiry = NOW + timedelta(days=60)
    _seed_lineage(expires_at=newer_expiry, transaction_id="txn-3")

    with db.engine.begin() as conn:
        changed = apply_transition(
            conn, classify("DID_RENEW", _transaction("txn-2", expires_at=NOW - timedelta(days=1)), NOW), NOW
        )

    assert changed is False
    record = fetch_lineage("orig-1")
    assert record.transaction_id == "txn-3"
    assert bool(record.is_active) is True
    assert parse_timestamp(record.expires_at) == newer_expiry


def test_apply_renewal_after_cancellation_reactivates():
    """inactive -> active once a newer billing period starts"""
    _seed_lineage(expires_at=NOW + timedelta(days=20))
    with db.engine.begin() as conn:
        apply_transition(conn, classify("CANCEL", _transaction("txn-1"), NOW), NOW)

    with db.engine.begin() as conn:
        changed = apply_transition(
            conn, classify("DID_RENEW", _transaction(expires_at=NOW + timedelta(days=30)), NOW), NOW
        )

    assert changed is True
    assert bool(fetch_lineage("orig-1").is_active) is True


def test_apply_cancellation_keeps_is_active_consistent():
    """is_active == (expires_at > now) after a cancellation"""
    _seed_lineage(expires_at=NOW + timedelta(days=20))

    with db.engine.begin() as conn:
        changed = apply_transition(conn, classify("CANCEL", _transaction(), NOW), NOW)

    assert changed is True
    record = fetch_lineage("orig-1")
    assert bool(record.is_active) is False
    assert parse_timestamp(record.expires_at) <= NOW


def test_apply_expired_keeps_earlier_expiry():
    """An expiry in the past is never pushed forward"""
    original_expiry = NOW - timedelta(days=2)
    _seed_lineage(expires_at=original_expiry)

    with db.engine.begin() as conn:
        apply_transition(conn, classify("EXPIRED", _transaction(expires_at=NOW), NOW), NOW)

    assert parse_timestamp(fetch_lineage("orig-1").expires_at) == original_expiry


def test_apply_refund_leaves_record_untouched():
    """Refunds withdraw premium without rewriting history"""
    expires_at = NOW + timedelta(days=20)
    _seed_lineage(expires_at=expires_at)
    before = fetch_lineage("orig-1")

    with db.engine.begin() as conn:
        changed = apply_transition(conn, classify("REFUND", _transaction(), NOW), NOW)

    assert changed is True
    after = fetch_lineage("orig-1")
    assert after.transaction_id == before.transaction_id
    assert parse_timestamp(after.expires_at) == expires_at
    assert bool(after.is_active) is True


def test_apply_unhandled_has_no_side_effects():
    _seed_lineage(expires_at=NOW + timedelta(days=20))

    with db.engine.begin() as conn:
        changed = apply_transition(conn, classify("PRICE_INCREASE", _transaction(), NOW), NOW)

    assert changed is False
    assert fetch_lineage("orig-1").transaction_id == "txn-1"


# ============================================================================
# dispatch_side_effects Tests
# ============================================================================

@pytest.mark.asyncio
async def test_dispatch_renewal_grants_tokens_last(ledger):
    """Premium flag first, token credit last"""
    transition = classify("DID_RENEW", _transaction(expires_at=NOW + timedelta(days=30)), NOW)

    await dispatch_side_effects(transition, "user-1", ledger)

    assert ledger.mock_calls == [
        call.set_premium_flag("user-1", True),
        call.add_tokens("user-1", 150000, "Subscription renewal (txn-2)"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("notification_type", ["CANCEL", "REFUND"])
async def test_dispatch_cancellation_and_refund_clear_premium(ledger, notification_type):
    await dispatch_side_effects(classify(notification_type, _transaction(), NOW), "user-1", ledger)

    ledger.set_premium_flag.assert_awaited_once_with("user-1", False)
    ledger.add_tokens.assert_not_awaited()


@pytest.mark.asyncio
async def test_dispatch_unhandled_does_nothing(ledger):
    await dispatch_side_effects(Unhandled(notification_type="TEST"), "user-1", ledger)

    assert ledger.mock_calls == []
