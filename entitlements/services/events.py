"""Append-only log of processed S2S notifications.

The unique constraint on ``iap_events.event_id`` is the idempotency guard:
``record_event`` inserts with ``ON CONFLICT DO NOTHING`` and a conflict means
another delivery of the same notification got there first. ``has_processed``
is only a fast path in front of it.
"""

import json
import logging
from datetime import datetime, timedelta, UTC
from typing import Any

import sqlalchemy
from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)


def has_processed(conn: Connection, event_id: str) -> bool:
    """Whether an event with this id has already been logged."""
    row = conn.execute(
        sqlalchemy.text("SELECT 1 FROM iap_events WHERE event_id = :event_id"),
        {"event_id": event_id}
    ).fetchone()
    return row is not None


def get_event(conn: Connection, event_id: str):
    """Fetch a logged event row, or None."""
    return conn.execute(
        sqlalchemy.text(
            """
            SELECT event_id, user_id, event_type, transaction_id,
                   side_effects_claimed_at, side_effects_completed_at
            FROM iap_events
            WHERE event_id = :event_id
            """
        ),
        {"event_id": event_id}
    ).fetchone()


def record_event(
    conn: Connection,
    event_id: str,
    user_id: str | None,
    event_type: str,
    transaction_id: str | None,
    metadata: dict[str, Any],
    claim_side_effects: bool = False,
    now: datetime | None = None
) -> bool:
    """Log an event exactly once.

    Args:
        claim_side_effects: Mark the event's side effects as claimed by this
            delivery; when False they are recorded as already complete

    Returns:
        True if this call inserted the row, False if the event id already existed
    """
    now = now or datetime.now(UTC)
    result = conn.execute(
        sqlalchemy.text(
            """
            INSERT INTO iap_events (
                event_id, user_id, event_type, transaction_id, metadata,
                side_effects_claimed_at, side_effects_completed_at, created_at
            ) VALUES (
                :event_id, :user_id, :event_type, :transaction_id, :metadata,
                :claimed_at, :completed_at, :created_at
            )
            ON CONFLICT (event_id) DO NOTHING
            RETURNING id
            """
        ),
        {
            "event_id": event_id,
            "user_id": user_id,
            "event_type": event_type,
            "transaction_id": transaction_id,
            "metadata": json.dumps(metadata, default=str),
            "claimed_at": now if claim_side_effects else None,
            "completed_at": None if claim_side_effects else now,
            "created_at": now,
        }
    )
    inserted = result.fetchone() is not None
    if not inserted:
        logger.info(f"[Events] Event {event_id} already recorded by another delivery")
    return inserted


def claim_pending_side_effects(
    conn: Connection,
    event_id: str,
    retry_after_seconds: int,
    now: datetime | None = None
) -> bool:
    """Take over side effects that an earlier delivery claimed but never finished.

    The claim only succeeds once the previous claim is older than
    ``retry_after_seconds``, so a redelivery that races an in-flight first
    delivery does not dispatch a second time.
    """
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(seconds=retry_after_seconds)
    result = conn.execute(
        sqlalchemy.text(
            """
            UPDATE iap_events
            SET side_effects_claimed_at = :now
            WHERE event_id = :event_id
              AND user_id IS NOT NULL
              AND side_effects_completed_at IS NULL
              AND (side_effects_claimed_at IS NULL OR side_effects_claimed_at < :cutoff)
            RETURNING id
            """
        ),
        {"event_id": event_id, "now": now, "cutoff": cutoff}
    )
    return result.fetchone() is not None


def mark_side_effects_complete(conn: Connection, event_id: str, now: datetime | None = None) -> None:
    conn.execute(
        sqlalchemy.text(
            """
            UPDATE iap_events
            SET side_effects_completed_at = :now
            WHERE event_id = :event_id
            """
        ),
        {"event_id": event_id, "now": now or datetime.now(UTC)}
    )
