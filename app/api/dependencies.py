"""
FastAPI Dependencies - Authentication and authorization.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AppUser
from app.db.session import get_write_db
from app.services.privy_auth import PrivyAuthService, pick_solana_wallet, privy_auth_service
from app.services.users import UserService

logger = get_logger(__name__)


class APIError(HTTPException):
    """
    HTTPException whose body is `{"error": message, ...extra}`.

    Extra keyword arguments are emitted as-is, so pass them in wire (camelCase)
    form, e.g. APIError(402, "Payment required", requiresPayment=True).
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        headers: dict[str, str] | None = None,
        **extra: Any,
    ) -> None:
        super().__init__(
            status_code=status_code,
            detail={"error": message, **extra},
            headers=headers,
        )


# ============================================================================
# Privy Authentication
# ============================================================================


@dataclass
class PrivyIdentity:
    """Authenticated caller from a verified Privy access token."""

    user_id: str  # Privy DID, e.g. did:privy:...
    token: str


# Bearer token scheme; absence is handled per endpoint
bearer_scheme = HTTPBearer(auto_error=False)


def get_privy_service() -> PrivyAuthService:
    return privy_auth_service


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    privy: PrivyAuthService = Depends(get_privy_service),
) -> PrivyIdentity:
    """
    Require `Authorization: Bearer {privy_access_token}`.

    Raises:
        APIError 401 "Unauthorized" when the header is missing, "Invalid token"
        when verification fails
    """
    if credentials is None:
        raise APIError(
            status.HTTP_401_UNAUTHORIZED,
            "Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    verification = await privy.verify_token(credentials.credentials)
    if not verification.valid or not verification.user_id:
        logger.info("privy_auth_rejected", reason=verification.error)
        raise APIError(
            status.HTTP_401_UNAUTHORIZED,
            "Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
            details=verification.error,
        )

    return PrivyIdentity(user_id=verification.user_id, token=credentials.credentials)


async def get_optional_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    privy: PrivyAuthService = Depends(get_privy_service),
) -> PrivyIdentity | None:
    """
    Optional Privy authentication - returns None if no token or an invalid one.

    Useful for endpoints that can work with or without auth.
    """
    if credentials is None:
        return None

    try:
        return await get_current_identity(credentials, privy)
    except HTTPException:
        return None


# ============================================================================
# App users
# ============================================================================


async def ensure_app_user(
    identity: PrivyIdentity, db: AsyncSession, privy: PrivyAuthService
) -> AppUser:
    """Load the caller's app user, creating it from the Privy profile on first use."""
    service = UserService(db)
    user = await service.get_by_privy_id(identity.user_id)
    if user is not None:
        return user

    profile = await privy.get_user(identity.user_id)
    wallet = pick_solana_wallet(profile.wallets) if profile else None
    user = await service.ensure_user(
        identity.user_id,
        email=profile.email if profile else None,
        wallet_address=wallet.address if wallet else None,
        wallet_provider=wallet.wallet_client_type if wallet else None,
    )
    logger.info("app_user_created", user_id=str(user.id), privy_user_id=identity.user_id)
    return user


async def get_current_user(
    identity: PrivyIdentity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_write_db),
    privy: PrivyAuthService = Depends(get_privy_service),
) -> AppUser:
    """Authenticated app user, auto-created on first request."""
    return await ensure_app_user(identity, db, privy)


async def get_optional_user(
    identity: PrivyIdentity | None = Depends(get_optional_identity),
    db: AsyncSession = Depends(get_write_db),
) -> AppUser | None:
    """App user for a valid token, or None. Never creates a user."""
    if identity is None:
        return None
    return await UserService(db).get_by_privy_id(identity.user_id)


async def get_existing_user(
    identity: PrivyIdentity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_write_db),
) -> AppUser:
    """Authenticated app user that must already exist (404 otherwise)."""
    user = await UserService(db).get_by_privy_id(identity.user_id)
    if user is None:
        raise APIError(status.HTTP_404_NOT_FOUND, "User not found")
    return user


# ============================================================================
# Admin API key
# ============================================================================


async def require_admin_key(
    x_admin_api_key: str | None = Header(None, description="Admin API key"),
) -> None:
    """
    Validate the `x-admin-api-key` header against ADMIN_API_KEY.

    Raises:
        APIError 500 when no admin key is configured, 401 on mismatch
    """
    if not settings.ADMIN_API_KEY:
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Admin API key not configured")

    if not x_admin_api_key or not hmac.compare_digest(x_admin_api_key, settings.ADMIN_API_KEY):
        logger.warning("admin_auth_rejected")
        raise APIError(status.HTTP_401_UNAUTHORIZED, "Unauthorized - Admin access required")
