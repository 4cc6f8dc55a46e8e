"""
Helius webhook management - keep deposit wallets registered on the account webhook.

Wallet registration is best effort. Missing configuration or an HTTP failure
is logged and reported as False. Only the admin sync raises, so an operator
sees which setting is missing.
"""

from dataclasses import dataclass, field

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AppUser
from app.exceptions import WebhookConfigError

logger = get_logger(__name__)


@dataclass
class HeliusWebhookConfig:
    """Current webhook settings, preserved across address updates."""

    webhook_url: str
    transaction_types: list[str] = field(default_factory=lambda: ["ACCOUNT_UPDATE"])
    account_addresses: list[str] = field(default_factory=list)
    webhook_type: str = "accountUpdate"
    encoding: str = "jsonParsed"


class HeliusClient:
    """Helius webhook REST client."""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_id: str | None = None,
        webhook_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.HELIUS_API_KEY
        self.webhook_id = webhook_id if webhook_id is not None else settings.HELIUS_WEBHOOK_ID
        self.webhook_url = webhook_url if webhook_url is not None else settings.HELIUS_WEBHOOK_URL
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=15.0)
        return self._http_client

    @property
    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

    def _webhook_endpoint(self) -> str:
        return f"{settings.helius_api_base}/webhooks/{self.webhook_id}"

    def _missing_config(self) -> str | None:
        if not self.webhook_id:
            return "HELIUS_WEBHOOK_ID"
        if not self.api_key:
            return "HELIUS_API_KEY"
        if not self.webhook_url:
            return "HELIUS_WEBHOOK_URL"
        return None

    async def get_webhook(self) -> HeliusWebhookConfig | None:
        """Fetch the current webhook config, or None on any failure."""
        if not self.api_key or not self.webhook_id:
            logger.warning("helius_not_configured", operation="get_webhook")
            return None

        try:
            response = await self.http_client.get(self._webhook_endpoint(), headers=self._headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "helius_get_webhook_failed",
                status=e.response.status_code,
                text=e.response.text,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("helius_get_webhook_error", error=str(e))
            return None

        return HeliusWebhookConfig(
            webhook_url=data.get("webhookURL") or self.webhook_url,
            transaction_types=data.get("transactionTypes") or ["ACCOUNT_UPDATE"],
            account_addresses=data.get("accountAddresses") or [],
            webhook_type=data.get("webhookType") or "accountUpdate",
            encoding=data.get("encoding") or "jsonParsed",
        )

    async def _put_addresses(self, current: HeliusWebhookConfig, addresses: list[str]) -> bool:
        body = {
            "webhookURL": self.webhook_url,
            "transactionTypes": current.transaction_types,
            "accountAddresses": addresses,
            "webhookType": current.webhook_type,
            "encoding": current.encoding,
        }
        try:
            response = await self.http_client.put(
                self._webhook_endpoint(), headers=self._headers, json=body
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "helius_update_webhook_failed",
                status=e.response.status_code,
                text=e.response.text,
            )
            return False
        except httpx.HTTPError as e:
            logger.error("helius_update_webhook_error", error=str(e))
            return False
        return True

    async def update_webhook_addresses(self, addresses: list[str]) -> bool:
        """Merge addresses into the webhook's account list."""
        missing = self._missing_config()
        if missing:
            logger.warning("helius_not_configured", missing=missing)
            return False

        current = await self.get_webhook()
        if current is None:
            return False

        merged = list(dict.fromkeys([*current.account_addresses, *addresses]))
        if not await self._put_addresses(current, merged):
            return False

        logger.info("helius_webhook_updated", added=len(addresses), total=len(merged))
        return True

    async def add_wallet(self, address: str) -> bool:
        return await self.update_webhook_addresses([address])

    async def sync_all_deposit_wallets(self, session: AsyncSession) -> tuple[bool, int]:
        """
        Register every known deposit wallet. Returns (success, wallet count).

        Raises:
            WebhookConfigError: If a Helius setting is missing
        """
        missing = self._missing_config()
        if missing:
            raise WebhookConfigError(missing)

        result = await session.execute(
            select(AppUser.deposit_wallet_address).where(
                AppUser.deposit_wallet_address.isnot(None)
            )
        )
        addresses = [address for address in result.scalars().all() if address]
        if not addresses:
            logger.info("helius_sync_no_wallets")
            return True, 0

        return await self.update_webhook_addresses(addresses), len(addresses)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


async def register_deposit_wallet(address: str) -> None:
    """Background task: add a new deposit wallet to the webhook."""
    client = HeliusClient()
    try:
        if not await client.add_wallet(address):
            logger.warning("helius_wallet_registration_skipped", wallet=address)
    finally:
        await client.close()

