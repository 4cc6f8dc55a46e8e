"""
Admin API routes for operating the service.

Protected by the `x-admin-api-key` header. These routes expose private keys
and rewrite ownership, so every call is logged.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import APIError, require_admin_key
from app.db.session import get_write_db
from app.exceptions import EncryptionError, WalletNotFoundError, WebhookConfigError
from app.models.api import (
    AdminPrivateKeyRequest,
    AdminPrivateKeyResponse,
    FixProjectsRequest,
    FixProjectsResponse,
    SyncWebhookResponse,
)
from app.services.admin import AdminService
from app.services.helius_webhook import HeliusClient
from app.services.users import UserService

logger = get_logger(__name__)
router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


@router.post("/sync-helius-webhook", response_model=SyncWebhookResponse)
async def sync_helius_webhook(db: AsyncSession = Depends(get_write_db)) -> SyncWebhookResponse:
    """Register every stored deposit wallet with the Helius webhook."""
    client = HeliusClient()
    try:
        success, count = await client.sync_all_deposit_wallets(db)
    except WebhookConfigError as exc:
        logger.error("admin_helius_sync_unconfigured", missing=exc.missing)
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Helius webhook not configured",
            missing=exc.missing,
        ) from exc
    finally:
        await client.close()

    if not success:
        logger.error("admin_helius_sync_failed", count=count)
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to sync wallets to Helius webhook",
            success=False,
            count=count,
        )

    logger.info("admin_helius_sync_complete", count=count)
    return SyncWebhookResponse(
        success=True,
        message=f"Successfully synced {count} wallet(s) to Helius webhook",
        count=count,
    )


async def _private_key_response(db: AsyncSession, public_key: str) -> AdminPrivateKeyResponse:
    try:
        return await AdminService(db).get_deposit_private_key(public_key)
    except WalletNotFoundError as exc:
        raise APIError(status.HTTP_404_NOT_FOUND, exc.message) from exc
    except EncryptionError as exc:
        logger.error("admin_private_key_decrypt_failed", wallet=public_key, error=exc.message)
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to decrypt private key",
            details=exc.message,
        ) from exc


@router.post("/get-private-key", response_model=AdminPrivateKeyResponse)
async def get_private_key(
    request: AdminPrivateKeyRequest,
    db: AsyncSession = Depends(get_write_db),
) -> AdminPrivateKeyResponse:
    """Decrypt the stored key of a deposit wallet."""
    if not request.public_key:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Public key is required")
    return await _private_key_response(db, request.public_key)


@router.get("/get-private-key", response_model=AdminPrivateKeyResponse)
async def get_private_key_by_query(
    public_key: str | None = Query(None, alias="publicKey"),
    db: AsyncSession = Depends(get_write_db),
) -> AdminPrivateKeyResponse:
    if not public_key:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Public key query parameter is required")
    return await _private_key_response(db, public_key)


@router.post("/fix-user-projects", response_model=FixProjectsResponse)
async def fix_user_projects(
    request: FixProjectsRequest,
    db: AsyncSession = Depends(get_write_db),
) -> FixProjectsResponse:
    """
    Link unowned projects to a user through their sandbox mapping.

    A user without a mapping adopts the sandbox of the oldest unowned project.
    """
    if not request.privy_user_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "privyUserId is required")

    user = await UserService(db).get_by_privy_id(request.privy_user_id)
    if user is None:
        raise APIError(status.HTTP_404_NOT_FOUND, "User not found")

    return await AdminService(db).fix_user_projects(user)
