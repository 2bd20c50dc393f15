"""App Store Server Notification processing.

verify -> filter product -> idempotency check -> resolve user -> transition
-> side effects -> broadcast, all sequential within one delivery.

Apple retries any delivery that does not get a 2xx, so every outcome that
will never change on retry (duplicate, unmonitored product, unknown user) is
reported as accepted. Verification failures and storage errors propagate to
the caller.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, UTC

import sqlalchemy

from entitlements import config
from entitlements import database as db
from entitlements.services import events
from entitlements.services.app_store import Notification, decode_notification
from entitlements.services.jws import KeySet
from entitlements.services.ledger import EntitlementBroadcaster, LedgerClient, LedgerError
from entitlements.services.products import is_monitored_subscription
from entitlements.services.subscription_store import resolve_user
from entitlements.services.transitions import apply_transition, classify, dispatch_side_effects

logger = logging.getLogger(__name__)

settings = config.get_settings()

PROCESSED = "processed"
DUPLICATE = "duplicate"
PRODUCT_NOT_MONITORED = "product_not_monitored"
USER_NOT_FOUND = "user_not_found"


@dataclass
class NotificationOutcome:
    """What happened to one delivery."""
    status: str
    notification_type: str
    notification_uuid: str
    user_id: str | None = None
    transition: str | None = None
    side_effects_completed: bool | None = None


class _AlreadyRecorded(Exception):
    """Raised inside the state transaction to roll it back on an event id conflict."""


async def _run_side_effects(
    notification: Notification,
    transition,
    user_id: str,
    ledger: LedgerClient
) -> bool:
    """Dispatch side effects and mark the event complete; never raises for ledger failures."""
    try:
        await dispatch_side_effects(transition, user_id, ledger)
    except LedgerError as e:
        # State is committed and the event is logged; a later redelivery can finish this
        logger.error(
            f"[Notifications] Side effects FAILED for event {notification.notification_uuid} "
            f"({notification.notification_type}, user {user_id}): {e}"
        )
        return False

    try:
        with db.engine.begin() as conn:
            events.mark_side_effects_complete(conn, notification.notification_uuid)
    except sqlalchemy.exc.SQLAlchemyError:
        # The ledger calls went through; failing the delivery now would invite a double grant
        logger.exception(
            f"[Notifications] Could not mark side effects complete for event {notification.notification_uuid}"
        )
    return True


async def _retry_pending_side_effects(
    notification: Notification,
    ledger: LedgerClient,
    broadcaster: EntitlementBroadcaster,
    now: datetime
) -> bool | None:
    """Finish side effects an earlier delivery of this event left incomplete.

    Returns:
        None if there was nothing to retry, otherwise whether the retry completed
    """
    with db.engine.begin() as conn:
        claimed = events.claim_pending_side_effects(
            conn,
            notification.notification_uuid,
            retry_after_seconds=settings.SIDE_EFFECT_RETRY_AFTER_SECONDS,
            now=now,
        )
        event = events.get_event(conn, notification.notification_uuid) if claimed else None

    if event is None:
        return None

    logger.info(f"[Notifications] Retrying pending side effects for event {notification.notification_uuid}")
    transition = classify(notification.notification_type, notification.transaction, now)
    completed = await _run_side_effects(notification, transition, event.user_id, ledger)
    if completed:
        await broadcaster.broadcast_entitlement_change(event.user_id)
    return completed


async def process_notification(
    signed_payload: str,
    key_set: KeySet,
    ledger: LedgerClient,
    broadcaster: EntitlementBroadcaster,
    now: datetime | None = None
) -> NotificationOutcome:
    """Verify and apply one S2S notification.

    Raises:
        JWSVerificationError: If the envelope or any nested field fails verification
        sqlalchemy.exc.SQLAlchemyError: On storage failure (safe to retry)
    """
    now = now or datetime.now(UTC)

    notification = decode_notification(signed_payload, key_set)
    transaction = notification.transaction

    logger.info(
        f"[Notifications] type={notification.notification_type}, subtype={notification.subtype}, "
        f"uuid={notification.notification_uuid}, env={notification.environment}, "
        f"product={transaction.product_id}, transaction={transaction.transaction_id}"
    )

    outcome = NotificationOutcome(
        status=PROCESSED,
        notification_type=notification.notification_type,
        notification_uuid=notification.notification_uuid,
    )

    if not is_monitored_subscription(transaction.product_id):
        logger.info(f"[Notifications] Ignoring event for product: {transaction.product_id}")
        outcome.status = PRODUCT_NOT_MONITORED
        return outcome

    with db.engine.begin() as conn:
        already_processed = events.has_processed(conn, notification.notification_uuid)

    if already_processed:
        logger.info(f"[Notifications] Event {notification.notification_uuid} already processed, skipping")
        outcome.status = DUPLICATE
        outcome.side_effects_completed = await _retry_pending_side_effects(notification, ledger, broadcaster, now)
        return outcome

    transition = classify(notification.notification_type, transaction, now)
    outcome.transition = type(transition).__name__

    try:
        with db.engine.begin() as conn:
            user_id = resolve_user(conn, transaction.original_transaction_id)
            outcome.user_id = user_id

            if user_id is None:
                # Still logged so the event can be reconciled by hand later
                logger.warning(
                    f"[Notifications] No user for original_transaction_id {transaction.original_transaction_id}"
                )
                has_side_effects = False
            else:
                has_side_effects = apply_transition(conn, transition, now)

            inserted = events.record_event(
                conn,
                event_id=notification.notification_uuid,
                user_id=user_id,
                event_type=notification.notification_type,
                transaction_id=transaction.transaction_id,
                metadata=notification.to_metadata(),
                claim_side_effects=has_side_effects,
                now=now,
            )
            if not inserted:
                raise _AlreadyRecorded()
    except _AlreadyRecorded:
        outcome.status = DUPLICATE
        return outcome

    if user_id is None:
        outcome.status = USER_NOT_FOUND
        return outcome

    if has_side_effects:
        outcome.side_effects_completed = await _run_side_effects(notification, transition, user_id, ledger)
        await broadcaster.broadcast_entitlement_change(user_id)

    logger.info(
        f"[Notifications] Event {notification.notification_uuid} processed for user {user_id}: "
        f"{outcome.transition}"
    )
    return outcome
