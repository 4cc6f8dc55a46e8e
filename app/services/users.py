"""
User Service - app user lookup and lazy creation keyed by Privy id.
"""

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import AppUser, Project
from app.exceptions import UserNotFoundError, WalletConflictError
from app.models.api import PrivateKeyExport
from app.services.wallets import encrypt_keypair, export_private_key, parse_private_key

logger = get_logger(__name__)


class UserService:
    """App users. Rows are created on the first authenticated request."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_privy_id(self, privy_user_id: str) -> AppUser | None:
        result = await self.session.execute(
            select(AppUser).where(AppUser.privy_user_id == privy_user_id)
        )
        return result.scalar_one_or_none()

    async def require_by_privy_id(self, privy_user_id: str) -> AppUser:
        user = await self.get_by_privy_id(privy_user_id)
        if user is None:
            raise UserNotFoundError(privy_user_id)
        return user

    async def get_by_deposit_wallet(self, address: str) -> AppUser | None:
        result = await self.session.execute(
            select(AppUser).where(AppUser.deposit_wallet_address == address)
        )
        return result.scalar_one_or_none()

    async def get_by_wallet_address(self, address: str) -> AppUser | None:
        result = await self.session.execute(
            select(AppUser).where(AppUser.wallet_address == address)
        )
        return result.scalar_one_or_none()

    async def ensure_user(
        self,
        privy_user_id: str,
        email: str | None = None,
        wallet_address: str | None = None,
        wallet_provider: str | None = None,
    ) -> AppUser:
        """
        Upsert an app user by Privy id.

        Email and wallet columns are only overwritten with non-null values. A
        wallet already linked to another user is dropped rather than failing
        the sign-in.
        """
        try:
            await self._upsert(privy_user_id, email, wallet_address, wallet_provider)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.warning(
                "user_wallet_conflict",
                privy_user_id=privy_user_id,
                wallet_address=wallet_address,
            )
            await self._upsert(privy_user_id, email, None, None)
            await self.session.commit()

        user = await self.get_by_privy_id(privy_user_id)
        if user is None:
            raise UserNotFoundError(privy_user_id)
        return user

    async def _upsert(
        self,
        privy_user_id: str,
        email: str | None,
        wallet_address: str | None,
        wallet_provider: str | None,
    ) -> None:
        stmt = insert(AppUser).values(
            privy_user_id=privy_user_id,
            email=email,
            wallet_address=wallet_address,
            wallet_provider=wallet_provider,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AppUser.privy_user_id],
            set_={
                "email": func.coalesce(stmt.excluded.email, AppUser.email),
                "wallet_address": func.coalesce(
                    stmt.excluded.wallet_address, AppUser.wallet_address
                ),
                "wallet_provider": func.coalesce(
                    stmt.excluded.wallet_provider, AppUser.wallet_provider
                ),
                "updated_at": func.now(),
            },
        )
        await self.session.execute(stmt)

    async def count_projects(self, user_id) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Project).where(Project.user_id == user_id)
        )
        return int(result.scalar_one())

    async def import_signup_wallet(self, user: AppUser, private_key: str | list[int]) -> str:
        """
        Replace the user's signup wallet with an imported keypair.

        Raises:
            InvalidPrivateKeyError: If the key can't be parsed
            WalletConflictError: If another user already has this wallet
        """
        keypair = parse_private_key(private_key)
        address = str(keypair.pubkey())

        owner = await self.get_by_wallet_address(address)
        if owner is not None and owner.id != user.id:
            raise WalletConflictError(address)

        try:
            await self.session.execute(
                update(AppUser)
                .where(AppUser.id == user.id)
                .values(
                    wallet_address=address,
                    wallet_secret_key_encrypted=encrypt_keypair(keypair).encrypted_secret_key,
                    updated_at=func.now(),
                )
            )
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise WalletConflictError(address) from exc

        logger.info("signup_wallet_imported", user_id=str(user.id), wallet=address)
        return address

    def export_signup_wallet(self, user: AppUser) -> PrivateKeyExport | None:
        """Decrypted signup wallet key, or None when only the provider holds it."""
        if not user.wallet_secret_key_encrypted:
            return None
        return export_private_key(user.wallet_secret_key_encrypted)
