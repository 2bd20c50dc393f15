"""Subscription state machine.

Each inbound event is classified into exactly one transition type, applied to
the canonical subscription record, and only then turned into side effects
(token grants, premium flag changes). State updates are always "set to a
computed value", so replaying a transition is harmless; the token grant is
the one non-idempotent effect and is guarded by the event log.

    no_subscription -> active -> (renewal) active
    active -> (cancel / expire / revoke) inactive
    active -> (refund) premium cleared, record kept
    inactive -> (renewal) active
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import assert_never

from sqlalchemy.engine import Connection

from entitlements.services import subscription_store
from entitlements.services.app_store import TransactionInfo
from entitlements.services.ledger import LedgerClient
from entitlements.services.products import SUBSCRIPTION, Product

logger = logging.getLogger(__name__)

RENEWAL_TYPES = frozenset({"DID_RENEW", "INTERACTIVE_RENEWAL", "SUBSCRIBED"})
CANCELLATION_TYPES = frozenset({"CANCEL", "EXPIRED", "REVOKE", "GRACE_PERIOD_EXPIRED"})
REFUND_TYPES = frozenset({"REFUND"})


@dataclass(frozen=True)
class Renewal:
    """The lineage is (re)entitled until ``expires_at``; grants tokens."""
    original_transaction_id: str
    transaction_id: str
    expires_at: datetime
    purchase_date_ms: int | None
    product: Product
    source: str = "renewal"

    @property
    def description(self) -> str:
        return f"Subscription {self.source} ({self.transaction_id})"


@dataclass(frozen=True)
class Cancellation:
    """The lineage loses its entitlement as of ``ended_at``."""
    original_transaction_id: str
    reason: str
    ended_at: datetime


@dataclass(frozen=True)
class Refund:
    """Premium is withdrawn; the record and token balance stay as they are."""
    original_transaction_id: str


@dataclass(frozen=True)
class Unhandled:
    """Logged for audit, no state change and no side effect."""
    notification_type: str


Transition = Renewal | Cancellation | Refund | Unhandled


def _ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def renewal_expiry(transaction: TransactionInfo, product: Product, now: datetime) -> datetime:
    """Expiry from the transaction, or one billing period from now if Apple omitted it."""
    if transaction.expires_date_ms:
        return _ms_to_datetime(transaction.expires_date_ms)
    logger.warning(
        f"[Transitions] No expiresDate for transaction {transaction.transaction_id}, "
        f"assuming {product.period_days} days from now"
    )
    return now + timedelta(days=product.period_days)


def classify(notification_type: str, transaction: TransactionInfo, now: datetime | None = None) -> Transition:
    """Turn an Apple notification type into the transition it causes."""
    now = now or datetime.now(UTC)

    if notification_type in RENEWAL_TYPES:
        return Renewal(
            original_transaction_id=transaction.original_transaction_id,
            transaction_id=transaction.transaction_id,
            expires_at=renewal_expiry(transaction, SUBSCRIPTION, now),
            purchase_date_ms=transaction.purchase_date_ms,
            product=SUBSCRIPTION,
        )

    if notification_type in CANCELLATION_TYPES:
        ended_at = now
        if transaction.revocation_date_ms:
            ended_at = _ms_to_datetime(transaction.revocation_date_ms)
        elif notification_type == "EXPIRED" and transaction.expires_date_ms:
            ended_at = _ms_to_datetime(transaction.expires_date_ms)
        return Cancellation(
            original_transaction_id=transaction.original_transaction_id,
            reason=notification_type,
            ended_at=ended_at,
        )

    if notification_type in REFUND_TYPES:
        return Refund(original_transaction_id=transaction.original_transaction_id)

    return Unhandled(notification_type=notification_type)


def apply_transition(conn: Connection, transition: Transition, now: datetime | None = None) -> bool:
    """Write the transition to the subscription record.

    Returns:
        True if the transition changes entitlement state (and so has side effects).
        A renewal the lineage already reflects returns False.
    """
    now = now or datetime.now(UTC)

    match transition:
        case Renewal():
            updated = subscription_store.renew_lineage(
                conn,
                original_transaction_id=transition.original_transaction_id,
                transaction_id=transition.transaction_id,
                expires_at=transition.expires_at,
                purchase_date_ms=transition.purchase_date_ms,
                now=now,
            )
            if not updated:
                logger.info(
                    f"[Transitions] Lineage {transition.original_transaction_id} already reflects transaction "
                    f"{transition.transaction_id} or a newer one, no renewal grant"
                )
            return updated
        case Cancellation():
            updated = subscription_store.deactivate_lineage(
                conn,
                original_transaction_id=transition.original_transaction_id,
                ended_at=transition.ended_at,
                now=now,
            )
            if not updated:
                logger.warning(
                    f"[Transitions] {transition.reason} for unknown lineage {transition.original_transaction_id}"
                )
            return True
        case Refund():
            # expires_at is left alone so the receipt stays as an audit trail
            return True
        case Unhandled():
            logger.info(f"[Transitions] Unhandled notification type: {transition.notification_type}")
            return False
        case _:
            assert_never(transition)


async def dispatch_side_effects(transition: Transition, user_id: str, ledger: LedgerClient) -> None:
    """Run the ledger calls a committed transition implies.

    Renewal sets the premium flag before crediting tokens so that the token
    grant, the only non-idempotent call, is always the last step.

    Raises:
        LedgerError: If any ledger call fails
    """
    match transition:
        case Renewal():
            await ledger.set_premium_flag(user_id, True)
            await ledger.add_tokens(user_id, transition.product.token_grant, transition.description)
        case Cancellation() | Refund():
            await ledger.set_premium_flag(user_id, False)
        case Unhandled():
            pass
        case _:
            assert_never(transition)
