"""
Wallet Routes - import and export of the user's signup wallet key.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import APIError, get_existing_user
from app.db.models import AppUser
from app.db.session import get_write_db
from app.exceptions import EncryptionError, InvalidPrivateKeyError, WalletConflictError
from app.models.api import ImportKeyRequest, WalletExportResponse, WalletImportResponse
from app.services.users import UserService

router = APIRouter(prefix="/api/wallet", tags=["wallet"])

EXPORT_HINT = (
    "This is normal if your wallet is managed by Privy or a third-party provider. "
    "Only app-generated wallets store keys here."
)


@router.post("/import", response_model=WalletImportResponse)
async def import_wallet(
    request: ImportKeyRequest,
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> WalletImportResponse:
    """Store an encrypted signup wallet key and make it the user's wallet."""
    if not request.private_key:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Private key is required")

    try:
        address = await UserService(db).import_signup_wallet(user, request.private_key)
    except InvalidPrivateKeyError as exc:
        raise APIError(status.HTTP_400_BAD_REQUEST, f"Invalid private key: {exc.message}") from exc
    except WalletConflictError as exc:
        raise APIError(
            status.HTTP_409_CONFLICT,
            "This wallet address is already associated with another account",
        ) from exc

    return WalletImportResponse(
        success=True, wallet_address=address, message="Wallet imported successfully"
    )


@router.get("/export", response_model=WalletExportResponse)
async def export_wallet(
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> WalletExportResponse:
    try:
        exported = UserService(db).export_signup_wallet(user)
    except EncryptionError as exc:
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message) from exc

    if exported is None or not user.wallet_address:
        raise APIError(
            status.HTTP_404_NOT_FOUND,
            "Signup wallet private key not stored",
            hint=EXPORT_HINT,
        )

    return WalletExportResponse(wallet_address=user.wallet_address, private_key=exported)
