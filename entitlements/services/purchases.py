"""Purchase-time receipt processing.

Grants entitlement straight from a validated receipt, so users are covered
even when the matching S2S notification is late or never arrives. A
(user, transaction) pair that is already recorded short-circuits before the
store is contacted, and no tokens are credited a second time.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC

from entitlements import database as db
from entitlements.services.ledger import LedgerClient, LedgerError
from entitlements.services.products import Product
from entitlements.services.receipt_validator import ReceiptValidator
from entitlements.services.subscription_store import (
    SubscriptionWrite,
    find_by_transaction,
    get_lineage,
    parse_timestamp,
    upsert_subscription,
)
from entitlements.services.transitions import Renewal, dispatch_side_effects

logger = logging.getLogger(__name__)

# Consumables never lapse; recorded with a far-future expiry
CONSUMABLE_EXPIRES_AT = datetime(2099, 12, 31, 23, 59, 59, tzinfo=UTC)


class ReceiptRejectedError(Exception):
    """The store refused the receipt; not worth retrying."""


@dataclass
class ReceiptOutcome:
    product_id: str
    is_subscription: bool
    is_active: bool
    expires_at: datetime | None
    platform: str | None = None
    tokens_added: int = 0
    already_processed: bool = False


def _already_processed(existing, product: Product) -> ReceiptOutcome:
    return ReceiptOutcome(
        product_id=existing.product_id,
        is_subscription=product.is_subscription,
        is_active=bool(existing.is_active),
        expires_at=parse_timestamp(existing.expires_at),
        platform=existing.platform,
        already_processed=True,
    )


async def process_receipt(
    user_id: str,
    receipt_data: str,
    product: Product,
    transaction_id: str,
    platform: str,
    validator: ReceiptValidator,
    ledger: LedgerClient,
    now: datetime | None = None
) -> ReceiptOutcome:
    """Validate a receipt, record the purchase and credit its tokens.

    Raises:
        ReceiptRejectedError: If the store rejected the receipt
        ReceiptServiceError: If the store could not be reached
        LineageConflictError: If the purchase lineage belongs to another user
        sqlalchemy.exc.SQLAlchemyError: On storage failure
    """
    now = now or datetime.now(UTC)

    with db.engine.begin() as conn:
        existing = find_by_transaction(conn, user_id, transaction_id)
    if existing is not None:
        logger.info(f"[Purchases] Transaction {transaction_id} already processed for user {user_id}")
        return _already_processed(existing, product)

    result = await validator.validate(receipt_data, transaction_id, product, platform)
    if not result.success:
        raise ReceiptRejectedError(result.error or "Receipt validation failed")

    if product.is_subscription:
        expires_at = result.expires_at or now + timedelta(days=product.period_days)
    else:
        expires_at = CONSUMABLE_EXPIRES_AT
    is_active = expires_at > now
    # Record the transaction the store matched, never the client's id for it
    transaction_id = result.transaction_id or transaction_id
    original_transaction_id = result.original_transaction_id or transaction_id

    with db.engine.begin() as conn:
        written = upsert_subscription(
            conn,
            SubscriptionWrite(
                user_id=user_id,
                platform=platform,
                product_id=product.product_id,
                transaction_id=transaction_id,
                original_transaction_id=original_transaction_id,
                expires_at=expires_at,
                purchase_date_ms=result.purchase_date_ms,
                latest_receipt=receipt_data,
                environment=result.environment,
            ),
            now=now,
        )
        if not written:
            # Recorded concurrently, or the lineage is already at a newer transaction
            existing = get_lineage(conn, original_transaction_id, platform)

    if not written:
        logger.info(
            f"[Purchases] Lineage {original_transaction_id} already reflects transaction {transaction_id} "
            f"for user {user_id}, no tokens granted"
        )
        return _already_processed(existing, product)

    outcome = ReceiptOutcome(
        product_id=product.product_id,
        is_subscription=product.is_subscription,
        is_active=is_active,
        expires_at=expires_at,
        platform=platform,
    )

    if not is_active:
        logger.info(f"[Purchases] Receipt for {transaction_id} is already expired, no tokens granted")
        return outcome

    try:
        if product.is_subscription:
            await dispatch_side_effects(
                Renewal(
                    original_transaction_id=original_transaction_id,
                    transaction_id=transaction_id,
                    expires_at=expires_at,
                    purchase_date_ms=result.purchase_date_ms,
                    product=product,
                    source="purchase",
                ),
                user_id,
                ledger,
            )
        else:
            await ledger.add_tokens(
                user_id,
                product.token_grant,
                f"Token pack purchase {product.product_id} ({transaction_id})"
            )
        outcome.tokens_added = product.token_grant
    except LedgerError as e:
        # The purchase is recorded; the grant needs manual follow-up
        logger.error(
            f"[Purchases] Token grant FAILED for user {user_id}, transaction {transaction_id}: {e}"
        )

    logger.info(
        f"[Purchases] {platform} purchase {transaction_id} processed for user {user_id}: "
        f"active={is_active}, tokens_added={outcome.tokens_added}"
    )
    return outcome
