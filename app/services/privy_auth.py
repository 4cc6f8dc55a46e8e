"""
Privy Auth - access token verification and user profile lookup.

Access tokens are ES256 JWTs signed with the app's key. The public keys come
from the app JWKS endpoint and are cached by PyJWKClient.
"""

import asyncio
import re
from collections.abc import Iterable

import httpx
import jwt
from jwt import PyJWKClient
from structlog import get_logger

from app.config import settings
from app.models.domain import LinkedWallet, PrivyProfile, PrivyVerification

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


class PrivyAuthService:
    """Verify Privy access tokens and fetch user profiles."""

    def __init__(
        self,
        app_id: str | None = None,
        app_secret: str | None = None,
        jwks_client: PyJWKClient | None = None,
    ) -> None:
        self.app_id = app_id if app_id is not None else settings.PRIVY_APP_ID
        self.app_secret = app_secret if app_secret is not None else settings.PRIVY_APP_SECRET
        self._jwks_client = jwks_client

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret)

    def _get_jwks_client(self) -> PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = PyJWKClient(
                f"{settings.privy_api_base}/apps/{self.app_id}/jwks.json",
                cache_keys=True,
            )
        return self._jwks_client

    def _decode(self, token: str) -> dict[str, object]:
        signing_key = self._get_jwks_client().get_signing_key_from_jwt(token)
        claims: dict[str, object] = jwt.decode(
            token,
            signing_key.key,
            algorithms=["ES256"],
            audience=self.app_id,
            issuer=settings.privy_issuer,
        )
        return claims

    async def verify_token(self, token: str | None) -> PrivyVerification:
        """
        Verify a Privy access token.

        Never raises. Failures come back as PrivyVerification(valid=False).
        """
        if not token:
            return PrivyVerification(valid=False, error="Missing Privy token")

        cleaned = _WHITESPACE.sub("", token)
        if not cleaned:
            return PrivyVerification(valid=False, error="Invalid token format")

        parts = cleaned.split(".")
        if len(parts) != 3:
            logger.warning("privy_token_malformed", parts=len(parts))
            return PrivyVerification(valid=False, error="Invalid token format - expected JWT")
        if any(not part for part in parts):
            return PrivyVerification(valid=False, error="Invalid token format - empty JWT parts")

        if not self.configured:
            logger.error("privy_not_configured")
            return PrivyVerification(valid=False, error="Privy not configured")

        try:
            claims = await asyncio.to_thread(self._decode, cleaned)
        except jwt.ExpiredSignatureError:
            logger.info("privy_token_expired")
            return PrivyVerification(valid=False, error="Token expired")
        except jwt.PyJWKClientError as exc:
            logger.warning("privy_jwks_unavailable", error=str(exc))
            return PrivyVerification(valid=False, error=str(exc))
        except jwt.InvalidTokenError as exc:
            logger.warning("privy_token_invalid", error=str(exc))
            return PrivyVerification(valid=False, error=str(exc) or "Token verification failed")

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            return PrivyVerification(valid=False, error="Invalid token - no userId returned")

        return PrivyVerification(valid=True, user_id=user_id)

    async def get_user(self, user_id: str) -> PrivyProfile | None:
        """
        Fetch email and linked wallets for a Privy user.

        Best effort: any failure returns None and callers continue with the
        user id alone.
        """
        if not self.configured:
            return None

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(
                    f"{settings.privy_api_base}/users/{user_id}",
                    auth=(self.app_id, self.app_secret),
                    headers={"privy-app-id": self.app_id},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("privy_get_user_failed", user_id=user_id, error=str(exc))
            return None

        email: str | None = None
        wallets: list[LinkedWallet] = []
        for account in data.get("linked_accounts", []):
            account_type = account.get("type")
            if account_type == "email" and email is None:
                email = account.get("address")
            elif account_type == "wallet" and account.get("address"):
                wallets.append(
                    LinkedWallet(
                        address=account["address"],
                        chain_type=account.get("chain_type"),
                        wallet_client_type=account.get("wallet_client_type"),
                    )
                )

        return PrivyProfile(user_id=user_id, email=email, wallets=tuple(wallets))


def pick_solana_wallet(wallets: Iterable[LinkedWallet]) -> LinkedWallet | None:
    """Prefer a Solana wallet, otherwise the first linked wallet."""
    wallets = list(wallets)
    for wallet in wallets:
        if "sol" in (wallet.chain_type or "").lower():
            return wallet
    return wallets[0] if wallets else None


privy_auth_service = PrivyAuthService()
