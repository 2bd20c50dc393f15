"""Apple App Store Server Notifications V2 decoding.

The outer notification is a signed JWS whose ``data`` object embeds further
signed JWS strings (``signedTransactionInfo`` and, optionally,
``signedRenewalInfo``). Apple signs each of those separately, so verifying the
envelope says nothing about the nested fields: every one of them goes through
``verify_jws`` on its own.

Documentation:
https://developer.apple.com/documentation/appstoreservernotifications
"""

from dataclasses import dataclass
from typing import Any

from entitlements.services.jws import KeySet, MalformedTokenError, verify_jws


@dataclass(frozen=True)
class TransactionInfo:
    """Parsed transaction information from Apple."""
    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date_ms: int | None
    expires_date_ms: int | None
    revocation_date_ms: int | None
    environment: str
    is_family_shared: bool


@dataclass(frozen=True)
class RenewalInfo:
    """Parsed renewal information from Apple."""
    original_transaction_id: str
    auto_renew_product_id: str | None
    auto_renew_status: bool
    grace_period_expires_date_ms: int | None
    is_in_billing_retry: bool


@dataclass(frozen=True)
class Notification:
    """A fully verified S2S notification."""
    notification_type: str
    subtype: str | None
    notification_uuid: str
    environment: str
    bundle_id: str | None
    transaction: TransactionInfo
    renewal: RenewalInfo | None
    payload: dict[str, Any]

    def to_metadata(self) -> dict[str, Any]:
        """Decoded payload with nested fields expanded, for the event log."""
        metadata = dict(self.payload)
        data = dict(metadata.get("data") or {})
        data["transactionInfo"] = vars(self.transaction)
        if self.renewal is not None:
            data["renewalInfo"] = vars(self.renewal)
        metadata["data"] = data
        return metadata


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedTokenError(f"Expected an epoch-millisecond timestamp, got {value!r}") from e


def _parse_transaction(payload: dict) -> TransactionInfo:
    original_transaction_id = payload.get("originalTransactionId")
    transaction_id = payload.get("transactionId")
    product_id = payload.get("productId")
    if not original_transaction_id or not transaction_id or not product_id:
        raise MalformedTokenError("Transaction info is missing originalTransactionId, transactionId or productId")

    return TransactionInfo(
        transaction_id=str(transaction_id),
        original_transaction_id=str(original_transaction_id),
        product_id=product_id,
        purchase_date_ms=_optional_int(payload.get("purchaseDate")),
        expires_date_ms=_optional_int(payload.get("expiresDate")),
        revocation_date_ms=_optional_int(payload.get("revocationDate")),
        environment=payload.get("environment", "Production"),
        is_family_shared=payload.get("inAppOwnershipType", "") == "FAMILY_SHARED",
    )


def _parse_renewal(payload: dict) -> RenewalInfo:
    return RenewalInfo(
        original_transaction_id=str(payload.get("originalTransactionId", "")),
        auto_renew_product_id=payload.get("autoRenewProductId"),
        auto_renew_status=payload.get("autoRenewStatus", 1) == 1,
        grace_period_expires_date_ms=_optional_int(payload.get("gracePeriodExpiresDate")),
        is_in_billing_retry=bool(payload.get("isInBillingRetryPeriod", False)),
    )


def decode_transaction(signed_transaction_info: str, key_set: KeySet) -> TransactionInfo:
    """Verify and parse a ``signedTransactionInfo`` JWS."""
    return _parse_transaction(verify_jws(signed_transaction_info, key_set))


def decode_renewal(signed_renewal_info: str, key_set: KeySet) -> RenewalInfo:
    """Verify and parse a ``signedRenewalInfo`` JWS."""
    return _parse_renewal(verify_jws(signed_renewal_info, key_set))


def decode_notification(signed_payload: str, key_set: KeySet) -> Notification:
    """Verify the notification envelope and every nested signed field.

    Raises:
        JWSVerificationError: If the envelope or any nested field fails
            verification, or required fields are missing
    """
    payload = verify_jws(signed_payload, key_set)

    notification_type = payload.get("notificationType")
    notification_uuid = payload.get("notificationUUID")
    if not notification_type or not notification_uuid:
        raise MalformedTokenError("Notification is missing notificationType or notificationUUID")

    data = payload.get("data")
    if not isinstance(data, dict):
        raise MalformedTokenError("Notification has no data object")

    signed_transaction_info = data.get("signedTransactionInfo")
    if not signed_transaction_info:
        raise MalformedTokenError("No signedTransactionInfo in notification")

    transaction = decode_transaction(signed_transaction_info, key_set)

    renewal = None
    signed_renewal_info = data.get("signedRenewalInfo")
    if signed_renewal_info:
        renewal = decode_renewal(signed_renewal_info, key_set)

    return Notification(
        notification_type=notification_type,
        subtype=payload.get("subtype"),
        notification_uuid=str(notification_uuid),
        environment=data.get("environment", transaction.environment),
        bundle_id=data.get("bundleId"),
        transaction=transaction,
        renewal=renewal,
        payload=payload,
    )
