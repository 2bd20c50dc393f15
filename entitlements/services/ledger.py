"""Clients for the external token ledger and realtime broadcast.

The ledger owns user balances and the premium flag; this engine never writes
them directly. All calls are service-key authenticated POSTs with a bounded
timeout and no retry, so a failure surfaces to the caller.
"""

import logging

import httpx

from entitlements import config

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """A ledger operation did not complete."""


class LedgerClient:
    """Calls the ledger's add-tokens and premium-flag operations."""

    def __init__(self):
        settings = config.get_settings()
        self.base_url = settings.LEDGER_URL.rstrip("/")
        self.service_key = settings.LEDGER_SERVICE_KEY
        self.timeout = settings.HTTP_TIMEOUT_SECONDS

        self.is_configured = bool(self.base_url and self.service_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }

    async def call(self, path: str, body: dict) -> None:
        """POST one operation to the ledger service."""
        if not self.is_configured:
            raise LedgerError("Ledger not configured")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/{path}",
                    json=body,
                    headers=self._headers(),
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            raise LedgerError(f"Ledger request to {path} failed: {e}") from e

        if response.status_code >= 400:
            raise LedgerError(f"Ledger {path} returned {response.status_code}: {response.text}")

    async def add_tokens(self, user_id: str, amount: int, description: str) -> None:
        """Credit tokens to a user's balance.

        Raises:
            LedgerError: If the ledger rejected or never received the call
        """
        await self.call("add_tokens", {"user_id": user_id, "amount": amount, "description": description})
        logger.info(f"[Ledger] Added {amount} tokens for user {user_id}: {description}")

    async def set_premium_flag(self, user_id: str, is_premium: bool) -> None:
        """Set or clear the user's premium subscriber flag.

        Raises:
            LedgerError: If the ledger rejected or never received the call
        """
        await self.call("set_premium", {"user_id": user_id, "is_premium": is_premium})
        logger.info(f"[Ledger] Premium flag for user {user_id} set to {is_premium}")


class EntitlementBroadcaster:
    """Notifies connected clients that a user's entitlement changed."""

    def __init__(self, ledger: LedgerClient | None = None):
        self.ledger = ledger or LedgerClient()

    async def broadcast_entitlement_change(self, user_id: str) -> None:
        """Best-effort broadcast; failures are logged and swallowed."""
        try:
            await self.ledger.call("broadcast_entitlement_change", {"user_id": user_id})
            logger.info(f"[Broadcast] Entitlement change broadcast for user {user_id}")
        except LedgerError as e:
            logger.warning(f"[Broadcast] Failed to broadcast entitlement change for user {user_id}: {e}")


# Singleton instances
ledger_client = LedgerClient()
broadcaster = EntitlementBroadcaster(ledger_client)
