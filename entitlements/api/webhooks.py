"""Apple App Store Server Notifications webhook.

Unauthenticated at the transport layer: trust comes entirely from verifying
the JWS envelope and its nested signed fields. Apple only looks at the status
code, so anything that will never succeed on retry is answered with 200.
"""

import json
import logging

import sqlalchemy
from fastapi import APIRouter, Depends, HTTPException, Request, status

from entitlements.api.dependencies import get_broadcaster, get_key_set, get_ledger
from entitlements.services.jws import KeySet, MalformedTokenError, TrustFailure
from entitlements.services.ledger import EntitlementBroadcaster, LedgerClient
from entitlements.services.notifications import process_notification

logger = logging.getLogger(__name__)

webhook_router = APIRouter(
    prefix="/api/v1/iap",
    tags=["iap-webhook"]
)


def _extract_signed_payload(body: bytes) -> str:
    """Accept either the raw compact JWS or Apple's ``{"signedPayload": ...}`` JSON."""
    text = body.decode("utf-8", errors="replace").strip()
    if text.startswith("{"):
        try:
            text = json.loads(text).get("signedPayload") or ""
        except (json.JSONDecodeError, AttributeError):
            text = ""
    return text


@webhook_router.post("/apple-webhook")
async def apple_webhook(
    request: Request,
    key_set: KeySet = Depends(get_key_set),
    ledger: LedgerClient = Depends(get_ledger),
    broadcaster: EntitlementBroadcaster = Depends(get_broadcaster),
):
    """Receive App Store Server Notifications from Apple.

    See: https://developer.apple.com/documentation/appstoreservernotifications
    """
    signed_payload = _extract_signed_payload(await request.body())
    if not signed_payload:
        logger.warning("[Webhook] Empty payload received")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Empty payload"
        )

    try:
        outcome = await process_notification(signed_payload, key_set, ledger, broadcaster)
    except TrustFailure as e:
        logger.warning(f"[Webhook] SECURITY WARNING: rejected notification, signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )
    except MalformedTokenError as e:
        logger.warning(f"[Webhook] Rejected malformed notification: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JWS"
        )
    except sqlalchemy.exc.SQLAlchemyError:
        logger.exception("[Webhook] Storage failure while processing notification")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    return {
        "ok": True,
        "status": outcome.status,
        "notification_uuid": outcome.notification_uuid,
    }
