"""Canonical subscription records and lineage-to-user resolution."""

import logging
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any

import sqlalchemy
from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)


class LineageConflictError(Exception):
    """The lineage is already recorded for a different user."""


@dataclass
class SubscriptionWrite:
    """Values to write for one lineage after a successful validation or renewal."""
    user_id: str
    platform: str
    product_id: str
    transaction_id: str
    original_transaction_id: str
    expires_at: datetime
    purchase_date_ms: int | None
    latest_receipt: str | None = None
    environment: str | None = None


def parse_timestamp(value: Any) -> datetime | None:
    """Normalize a timestamp column to an aware UTC datetime.

    PostgreSQL returns aware datetimes; SQLite hands back ISO strings.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace(" ", "T").replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def resolve_user(conn: Connection, original_transaction_id: str, platform: str = "ios") -> str | None:
    """Map a lineage id to the user that owns it, or None if never seen."""
    row = conn.execute(
        sqlalchemy.text(
            """
            SELECT user_id
            FROM subscriptions
            WHERE original_transaction_id = :original_transaction_id
              AND platform = :platform
            ORDER BY updated_at DESC
            LIMIT 1
            """
        ),
        {"original_transaction_id": original_transaction_id, "platform": platform}
    ).fetchone()
    return row.user_id if row else None


def find_by_transaction(conn: Connection, user_id: str, transaction_id: str):
    """Find the record for a user that already carries this transaction id."""
    return conn.execute(
        sqlalchemy.text(
            """
            SELECT user_id, platform, product_id, transaction_id, original_transaction_id,
                   expires_at, is_active, purchase_date_ms
            FROM subscriptions
            WHERE user_id = :user_id AND transaction_id = :transaction_id
            LIMIT 1
            """
        ),
        {"user_id": user_id, "transaction_id": transaction_id}
    ).fetchone()


def get_lineage(conn: Connection, original_transaction_id: str, platform: str = "ios"):
    return conn.execute(
        sqlalchemy.text(
            """
            SELECT user_id, platform, product_id, transaction_id, original_transaction_id,
                   expires_at, is_active, purchase_date_ms
            FROM subscriptions
            WHERE original_transaction_id = :original_transaction_id
              AND platform = :platform
            """
        ),
        {"original_transaction_id": original_transaction_id, "platform": platform}
    ).fetchone()


def get_latest_for_user(conn: Connection, user_id: str, product_id: str):
    return conn.execute(
        sqlalchemy.text(
            """
            SELECT user_id, platform, product_id, transaction_id, original_transaction_id,
                   expires_at, is_active, purchase_date_ms, updated_at
            FROM subscriptions
            WHERE user_id = :user_id AND product_id = :product_id
            ORDER BY updated_at DESC
            LIMIT 1
            """
        ),
        {"user_id": user_id, "product_id": product_id}
    ).fetchone()


def upsert_subscription(conn: Connection, record: SubscriptionWrite, now: datetime | None = None) -> bool:
    """Create or advance the record for a lineage.

    ``is_active`` is always recomputed from ``expires_at`` here. The update
    only fires when the lineage belongs to the same user and moves forward to
    a different transaction with a later expiry. Replaying a transaction, or
    an older one from the same lineage, is a no-op.

    Returns:
        True if a row was written, False if the lineage already reflects this
        transaction or a newer one

    Raises:
        LineageConflictError: If another user owns the lineage
    """
    now = now or datetime.now(UTC)
    is_active = record.expires_at > now

    result = conn.execute(
        sqlalchemy.text(
            """
            INSERT INTO subscriptions (
                user_id, platform, product_id, transaction_id, original_transaction_id,
                latest_receipt, purchase_date_ms, expires_at, is_active, environment,
                created_at, updated_at
            ) VALUES (
                :user_id, :platform, :product_id, :transaction_id, :original_transaction_id,
                :latest_receipt, :purchase_date_ms, :expires_at, :is_active, :environment,
                :now, :now
            )
            ON CONFLICT (platform, original_transaction_id) DO UPDATE SET
                transaction_id = EXCLUDED.transaction_id,
                product_id = EXCLUDED.product_id,
                latest_receipt = EXCLUDED.latest_receipt,
                purchase_date_ms = EXCLUDED.purchase_date_ms,
                expires_at = EXCLUDED.expires_at,
                is_active = EXCLUDED.is_active,
                environment = COALESCE(EXCLUDED.environment, subscriptions.environment),
                updated_at = EXCLUDED.updated_at
            WHERE subscriptions.user_id = EXCLUDED.user_id
              AND subscriptions.transaction_id <> EXCLUDED.transaction_id
              AND (subscriptions.expires_at IS NULL OR subscriptions.expires_at < EXCLUDED.expires_at)
            RETURNING id
            """
        ),
        {
            "user_id": record.user_id,
            "platform": record.platform,
            "product_id": record.product_id,
            "transaction_id": record.transaction_id,
            "original_transaction_id": record.original_transaction_id,
            "latest_receipt": record.latest_receipt,
            "purchase_date_ms": record.purchase_date_ms,
            "expires_at": record.expires_at,
            "is_active": is_active,
            "environment": record.environment,
            "now": now,
        }
    )
    if result.fetchone() is not None:
        return True

    existing = get_lineage(conn, record.original_transaction_id, record.platform)
    if existing is not None and existing.user_id != record.user_id:
        logger.warning(
            f"[Subscriptions] Lineage {record.original_transaction_id} belongs to another user, "
            f"rejecting write for user {record.user_id}"
        )
        raise LineageConflictError(record.original_transaction_id)
    return False


def renew_lineage(
    conn: Connection,
    original_transaction_id: str,
    transaction_id: str,
    expires_at: datetime,
    purchase_date_ms: int | None,
    now: datetime | None = None
) -> bool:
    """Advance an existing iOS lineage after a renewal notification.

    A lineage that already carries ``transaction_id`` is left alone: that
    renewal was recorded earlier, by a receipt validation or another
    notification, and must not be credited twice. A renewal whose expiry is
    not later than the recorded one arrived out of order and is left alone
    too.

    Returns:
        True if the lineage moved to this transaction
    """
    now = now or datetime.now(UTC)
    result = conn.execute(
        sqlalchemy.text(
            """
            UPDATE subscriptions
            SET transaction_id = :transaction_id,
                purchase_date_ms = COALESCE(:purchase_date_ms, purchase_date_ms),
                expires_at = :expires_at,
                is_active = :is_active,
                updated_at = :now
            WHERE original_transaction_id = :original_transaction_id
              AND platform = 'ios'
              AND transaction_id <> :transaction_id
              AND (expires_at IS NULL OR expires_at < :expires_at)
            RETURNING id
            """
        ),
        {
            "original_transaction_id": original_transaction_id,
            "transaction_id": transaction_id,
            "purchase_date_ms": purchase_date_ms,
            "expires_at": expires_at,
            "is_active": expires_at > now,
            "now": now,
        }
    )
    return result.fetchone() is not None


def deactivate_lineage(
    conn: Connection,
    original_transaction_id: str,
    ended_at: datetime,
    now: datetime | None = None
) -> bool:
    """Mark an iOS lineage inactive, ending its window no later than ``ended_at``.

    The record is kept as an audit trail. ``expires_at`` is clamped so that
    ``is_active = false`` still agrees with ``expires_at > now``.

    Returns:
        True if the lineage record exists and was updated
    """
    now = now or datetime.now(UTC)
    existing = get_lineage(conn, original_transaction_id)
    if existing is None:
        return False

    current_expiry = parse_timestamp(existing.expires_at)
    expires_at = min(ended_at, now)
    if current_expiry is not None:
        expires_at = min(current_expiry, expires_at)

    conn.execute(
        sqlalchemy.text(
            """
            UPDATE subscriptions
            SET is_active = :is_active,
                expires_at = :expires_at,
                updated_at = :now
            WHERE original_transaction_id = :original_transaction_id
              AND platform = 'ios'
            """
        ),
        {
            "original_transaction_id": original_transaction_id,
            "is_active": False,
            "expires_at": expires_at,
            "now": now,
        }
    )
    return True
