"""Purchase-time receipt validation.

Validates a freshly purchased receipt directly with the store, independent of
the S2S webhook path, so a user whose notification is delayed or lost still
gets their entitlement.

iOS receipts go to Apple's ``verifyReceipt`` endpoint (production first, then
sandbox when Apple answers with status 21007). Android purchases are validated
from the purchase JSON the client obtained from Google Play.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC

import httpx

from entitlements import config
from entitlements.services.products import Product

logger = logging.getLogger(__name__)

# Apple verifyReceipt status codes
STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007

SUPPORTED_PLATFORMS = ("ios", "android")


class ReceiptServiceError(Exception):
    """The store's verification service could not be reached or answered garbage.

    This is a downstream failure, safe for the client to retry.
    """


@dataclass
class ValidationResult:
    """Outcome of validating one receipt."""
    success: bool
    expires_at: datetime | None = None
    purchase_date_ms: int | None = None
    # Transaction the store matched; may differ from the id the client sent
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    environment: str | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> "ValidationResult":
        return cls(success=False, error=error)


def _ms_to_datetime(value) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def _entry_order(entry: dict) -> int:
    try:
        return int(entry.get("expires_date_ms") or entry.get("purchase_date_ms") or 0)
    except (TypeError, ValueError):
        return 0


def _find_transaction(entries: list[dict], transaction_id: str) -> dict | None:
    """Match a receipt entry by its own id, else the newest entry of that lineage."""
    for entry in entries:
        if entry.get("transaction_id") == transaction_id:
            return entry
    lineage = [entry for entry in entries if entry.get("original_transaction_id") == transaction_id]
    if not lineage:
        return None
    return max(lineage, key=_entry_order)


def _entry_result(entry: dict, environment: str) -> ValidationResult:
    """Build a result from the receipt entry that was actually matched."""
    try:
        purchase_date_ms = int(entry["purchase_date_ms"])
        expires_at = _ms_to_datetime(entry["expires_date_ms"]) if entry.get("expires_date_ms") else None
    except (KeyError, TypeError, ValueError):
        logger.warning(f"[Receipt] Receipt entry {entry.get('transaction_id')} has no usable purchase date")
        return ValidationResult.failure("Receipt entry is missing its purchase date")

    return ValidationResult(
        success=True,
        expires_at=expires_at,
        purchase_date_ms=purchase_date_ms,
        transaction_id=entry.get("transaction_id"),
        original_transaction_id=entry.get("original_transaction_id"),
        environment=environment,
    )


class ReceiptValidator:
    """Validates receipts against Apple's verifyReceipt and Google Play payloads."""

    def __init__(self):
        settings = config.get_settings()
        self.production_url = settings.APPLE_VERIFY_RECEIPT_URL
        self.sandbox_url = settings.APPLE_SANDBOX_VERIFY_RECEIPT_URL
        self.shared_secret = settings.APPLE_SHARED_SECRET
        self.timeout = settings.HTTP_TIMEOUT_SECONDS

    async def validate(
        self,
        receipt_data: str,
        transaction_id: str,
        product: Product,
        platform: str
    ) -> ValidationResult:
        """Validate a receipt for one transaction.

        Returns:
            ValidationResult with success=False when the store rejects the receipt

        Raises:
            ReceiptServiceError: If the store could not be reached
            ValueError: If the platform is not supported
        """
        if platform == "ios":
            return await self.validate_apple(receipt_data, transaction_id, product)
        if platform == "android":
            return self.validate_google(receipt_data, transaction_id, product)
        raise ValueError(f"Unsupported platform: {platform}")

    async def _post_receipt(self, client: httpx.AsyncClient, url: str, body: dict) -> dict:
        try:
            response = await client.post(url, json=body, timeout=self.timeout)
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"[Receipt] Apple verifyReceipt request to {url} failed: {e}")
            raise ReceiptServiceError("Apple validation request failed") from e
        except ValueError as e:
            logger.error(f"[Receipt] Apple verifyReceipt returned a non-JSON response from {url}")
            raise ReceiptServiceError("Apple validation returned an invalid response") from e

    async def validate_apple(self, receipt_data: str, transaction_id: str, product: Product) -> ValidationResult:
        """Validate an App Store receipt with verifyReceipt."""
        body = {
            "receipt-data": receipt_data,
            "password": self.shared_secret,
            "exclude-old-transactions": False,
        }

        async with httpx.AsyncClient() as client:
            result = await self._post_receipt(client, self.production_url, body)
            environment = "Production"

            # Receipts from test accounts are only valid in the sandbox
            if result.get("status") == STATUS_SANDBOX_RECEIPT:
                logger.info("[Receipt] Sandbox receipt sent to production, retrying against sandbox")
                result = await self._post_receipt(client, self.sandbox_url, body)
                environment = "Sandbox"

        status_code = result.get("status")
        if status_code != STATUS_OK:
            logger.warning(f"[Receipt] Apple validation failed with status: {status_code}")
            return ValidationResult.failure(f"Apple validation failed with status: {status_code}")

        if product.is_subscription:
            entry = _find_transaction(result.get("latest_receipt_info") or [], transaction_id)
            if entry and entry.get("expires_date_ms"):
                return _entry_result(entry, environment)

        in_app = result.get("in_app") or (result.get("receipt") or {}).get("in_app") or []
        entry = _find_transaction(in_app, transaction_id)
        if entry:
            return _entry_result(entry, environment)

        logger.warning(f"[Receipt] Transaction {transaction_id} not found in receipt")
        return ValidationResult.failure("Transaction not found in receipt")

    def validate_google(self, receipt_data: str, transaction_id: str, product: Product) -> ValidationResult:
        """Validate a Google Play purchase from the client-supplied purchase JSON.

        The transaction id must be the purchase's ``orderId`` or
        ``purchaseToken``, and the result always carries the ``orderId`` when
        there is one, so one purchase maps to one recorded transaction.

        Google does not always report an expiry for subscriptions, so it is
        approximated as purchase time plus the product's billing period.
        """
        try:
            purchase = json.loads(receipt_data)
        except (TypeError, json.JSONDecodeError):
            logger.warning("[Receipt] Google Play receipt is not valid purchase JSON")
            return ValidationResult.failure("Google Play validation failed")

        if not isinstance(purchase, dict):
            return ValidationResult.failure("Google Play validation failed")

        order_id = purchase.get("orderId")
        purchase_token = purchase.get("purchaseToken")
        if not transaction_id or transaction_id not in (order_id, purchase_token):
            logger.warning(
                f"[Receipt] Google Play transaction {transaction_id} does not match purchase order {order_id}"
            )
            return ValidationResult.failure("Google Play transaction mismatch")

        if purchase.get("productId") != product.product_id:
            logger.warning(
                f"[Receipt] Google Play product mismatch: receipt={purchase.get('productId')}, "
                f"requested={product.product_id}"
            )
            return ValidationResult.failure("Google Play product mismatch")

        # purchaseState: 0 purchased, 1 canceled, 2 pending
        if purchase.get("purchaseState", 0) != 0:
            return ValidationResult.failure("Google Play purchase is not completed")

        try:
            purchase_time_ms = int(purchase["purchaseTime"])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"[Receipt] Google Play purchase {transaction_id} has no usable purchaseTime")
            return ValidationResult.failure("Google Play purchase is missing its purchase time")

        expires_at = None
        if product.is_subscription:
            expires_at = _ms_to_datetime(purchase_time_ms) + timedelta(days=product.period_days)

        canonical_id = order_id or purchase_token
        return ValidationResult(
            success=True,
            expires_at=expires_at,
            purchase_date_ms=purchase_time_ms,
            transaction_id=canonical_id,
            original_transaction_id=canonical_id,
        )


# Singleton instance
receipt_validator = ReceiptValidator()
