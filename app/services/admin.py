"""
Admin Service - operator tasks behind the admin API key.
"""

from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AppUser, Project, Sandbox, UserSandbox
from app.exceptions import WalletNotFoundError
from app.models.api import AdminPrivateKeyResponse, FixedProject, FixProjectsResponse
from app.services.users import UserService
from app.services.wallets import export_private_key

logger = get_logger(__name__)


class AdminService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_deposit_private_key(self, public_key: str) -> AdminPrivateKeyResponse:
        """
        Decrypt the stored key of a deposit wallet.

        Raises:
            WalletNotFoundError: If no user has this deposit wallet or its key isn't stored
            EncryptionError: If the stored key can't be decrypted
        """
        user = await UserService(self.session).get_by_deposit_wallet(public_key)
        if user is None:
            raise WalletNotFoundError(public_key)
        if not user.deposit_wallet_secret_key_encrypted:
            raise WalletNotFoundError(public_key, "Private key not stored for this wallet")

        private_key = export_private_key(user.deposit_wallet_secret_key_encrypted)
        logger.warning("admin_private_key_retrieved", wallet=public_key, user_id=str(user.id))
        return AdminPrivateKeyResponse(
            public_key=public_key,
            private_key=private_key,
            user_id=str(user.id),
            retrieved_at=datetime.now(UTC).isoformat(),
        )

    async def fix_user_projects(self, user: AppUser) -> FixProjectsResponse:
        """
        Link unowned projects to a user.

        Projects in the user's mapped sandbox are linked. A user without a
        mapping adopts the sandbox of the oldest unowned project, and every
        unowned project in it.
        """
        result = await self.session.execute(
            select(Project).where(Project.user_id.is_(None)).order_by(Project.created_at.asc())
        )
        unlinked = list(result.scalars().all())
        if not unlinked:
            return FixProjectsResponse(message="No unlinked projects found", fixed=0, projects=[])

        mapping = await self.session.execute(
            select(UserSandbox.sandbox_id).where(UserSandbox.app_user_id == user.id)
        )
        sandbox_id = mapping.scalar_one_or_none()

        if sandbox_id is None:
            sandbox_id = unlinked[0].sandbox_id
            await self.session.execute(
                insert(Sandbox)
                .values(sandbox_id=sandbox_id, capacity=settings.sandbox_capacity, active_users=0)
                .on_conflict_do_nothing(index_elements=[Sandbox.sandbox_id])
            )
            await self.session.execute(
                insert(UserSandbox).values(app_user_id=user.id, sandbox_id=sandbox_id)
            )
            await self.session.execute(
                update(Sandbox)
                .where(Sandbox.sandbox_id == sandbox_id)
                .values(active_users=Sandbox.active_users + 1, last_assigned_at=func.now())
            )
            await self.session.execute(
                update(AppUser).where(AppUser.id == user.id).values(sandbox_id=sandbox_id)
            )
            logger.info("admin_sandbox_adopted", user_id=str(user.id), sandbox_id=sandbox_id)

        result = await self.session.execute(
            update(Project)
            .where(Project.sandbox_id == sandbox_id, Project.user_id.is_(None))
            .values(user_id=user.id)
            .returning(Project.id, Project.name, Project.sandbox_id)
        )
        fixed = [
            FixedProject(
                id=str(row.id), name=row.name, sandbox_id=row.sandbox_id, user_id=str(user.id)
            )
            for row in result.all()
        ]
        await self.session.commit()

        logger.info("admin_projects_linked", user_id=str(user.id), fixed=len(fixed))
        return FixProjectsResponse(
            message=f"Fixed {len(fixed)} project(s)", fixed=len(fixed), projects=fixed
        )
