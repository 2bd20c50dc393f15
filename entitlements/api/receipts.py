"""In-app purchase receipt endpoints.

Clients call validate-receipt right after a purchase completes so the
entitlement is granted immediately, without waiting on Apple's notification.
"""

import logging
from datetime import datetime, UTC

import sqlalchemy
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from entitlements import database as db
from entitlements.api import auth
from entitlements.api.dependencies import get_ledger, get_receipt_validator
from entitlements.services.ledger import LedgerClient
from entitlements.services.products import SUBSCRIPTION, get_product
from entitlements.services.purchases import ReceiptRejectedError, process_receipt
from entitlements.services.receipt_validator import (
    SUPPORTED_PLATFORMS,
    ReceiptServiceError,
    ReceiptValidator,
)
from entitlements.services.subscription_store import (
    LineageConflictError,
    get_latest_for_user,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/iap",
    tags=["iap"],
    dependencies=[Depends(auth.get_current_user_id)]
)


# ==================== Request/Response Models ====================

class ValidateReceiptRequest(BaseModel):
    """Receipt submitted by the client after a purchase.

    Everything is optional here so missing fields come back as a plain 400.
    """
    receipt_data: str | None = None
    user_id: str | None = None
    product_id: str | None = None
    transaction_id: str | None = None
    platform: str | None = None


class ValidateReceiptResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    already_processed: bool | None = Field(default=None, alias="alreadyProcessed")
    is_active: bool = Field(alias="isActive")
    expires_at: str | None = Field(default=None, alias="expiresAt")
    tokens_added: int | None = Field(default=None, alias="tokensAdded")
    platform: str | None = None
    is_subscription: bool | None = Field(default=None, alias="isSubscription")
    product_id: str = Field(alias="productId")


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_active: bool = Field(alias="isActive")
    product_id: str | None = Field(default=None, alias="productId")
    expires_at: str | None = Field(default=None, alias="expiresAt")
    platform: str | None = None
    original_transaction_id: str | None = Field(default=None, alias="originalTransactionId")


# ==================== Endpoints ====================

@router.post(
    "/validate-receipt",
    response_model=ValidateReceiptResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def validate_receipt(
    body: ValidateReceiptRequest,
    user_id: str = Depends(auth.get_current_user_id),
    validator: ReceiptValidator = Depends(get_receipt_validator),
    ledger: LedgerClient = Depends(get_ledger),
):
    """Validate a purchase receipt and grant what it buys."""
    if body.user_id and body.user_id != user_id:
        logger.warning(f"[IAP] User {user_id} tried to validate a receipt for user {body.user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User ID mismatch"
        )

    if not body.receipt_data or not body.product_id or not body.transaction_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: receipt_data, product_id, transaction_id"
        )

    platform = body.platform or "ios"
    if platform not in SUPPORTED_PLATFORMS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported platform: {platform}"
        )

    product = get_product(body.product_id)
    if product is None:
        logger.warning(f"[IAP] Invalid product ID from user {user_id}: {body.product_id}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid product ID: {body.product_id}"
        )

    try:
        outcome = await process_receipt(
            user_id=user_id,
            receipt_data=body.receipt_data,
            product=product,
            transaction_id=body.transaction_id,
            platform=platform,
            validator=validator,
            ledger=ledger,
        )
    except ReceiptRejectedError as e:
        logger.info(f"[IAP] Receipt rejected for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=str(e)
        )
    except ReceiptServiceError as e:
        logger.error(f"[IAP] Receipt verification unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Receipt verification service unavailable"
        )
    except LineageConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Purchase belongs to another account"
        )
    except sqlalchemy.exc.SQLAlchemyError:
        logger.exception(f"[IAP] Storage failure validating receipt for user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    expires_at = outcome.expires_at.isoformat() if outcome.expires_at else None

    if outcome.already_processed:
        return ValidateReceiptResponse(
            success=True,
            already_processed=True,
            is_active=outcome.is_active,
            expires_at=expires_at,
            product_id=outcome.product_id,
        )

    return ValidateReceiptResponse(
        success=True,
        is_active=outcome.is_active,
        expires_at=expires_at,
        tokens_added=outcome.tokens_added,
        platform=outcome.platform,
        is_subscription=outcome.is_subscription,
        product_id=outcome.product_id,
    )


@router.get(
    "/subscription",
    response_model=SubscriptionResponse,
    response_model_by_alias=True,
)
def get_subscription(user_id: str = Depends(auth.get_current_user_id)):
    """Get the caller's current subscription state."""
    with db.engine.begin() as conn:
        record = get_latest_for_user(conn, user_id, SUBSCRIPTION.product_id)

    if record is None:
        return SubscriptionResponse(is_active=False)

    expires_at = parse_timestamp(record.expires_at)
    # The stored flag can lag behind the clock between notifications
    is_active = bool(record.is_active) and expires_at is not None and expires_at > datetime.now(UTC)

    return SubscriptionResponse(
        is_active=is_active,
        product_id=record.product_id,
        expires_at=expires_at.isoformat() if expires_at else None,
        platform=record.platform,
        original_transaction_id=record.original_transaction_id,
    )
