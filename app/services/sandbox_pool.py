"""
Sandbox Pool - place users into shared Daytona sandboxes.

Each sandbox hosts up to `capacity` users. A user keeps their sandbox for
life; if Daytona has deleted it, a replacement is created and every mapping
and project that pointed at the old id is moved over.
"""

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AppUser, Project, Sandbox, UserSandbox
from app.exceptions import SandboxAssignmentError, SandboxError, SandboxUnavailableError
from app.observability.metrics import metrics
from app.services.sandbox_provider import SandboxProvider, sandbox_provider

logger = get_logger(__name__)

SANDBOX_CREATION_FAILED = "SANDBOX_CREATION_FAILED"
SANDBOX_ASSIGNMENT_FAILED = "SANDBOX_ASSIGNMENT_FAILED"


class SandboxPoolService:
    """Sandbox assignment backed by the sandboxes and user_sandboxes tables."""

    def __init__(self, session: AsyncSession, provider: SandboxProvider | None = None) -> None:
        self.session = session
        self.provider = provider or sandbox_provider

    async def get_mapping(self, user_id) -> str | None:
        result = await self.session.execute(
            select(UserSandbox.sandbox_id).where(UserSandbox.app_user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_sandbox(self, sandbox_id: str) -> Sandbox | None:
        result = await self.session.execute(
            select(Sandbox).where(Sandbox.sandbox_id == sandbox_id)
        )
        return result.scalar_one_or_none()

    async def assign_sandbox(self, user: AppUser) -> str:
        """
        Return the sandbox id for a user, assigning one if needed.

        Raises:
            SandboxAssignmentError: If no sandbox could be reused, found, or created
        """
        existing = await self.get_mapping(user.id) or user.sandbox_id
        if existing:
            sandbox_id = await self._verify_or_recreate(user, existing)
            if sandbox_id:
                return sandbox_id

        sandbox_id = await self._find_available()
        if sandbox_id is None:
            try:
                sandbox_id = await self.provider.create_sandbox()
            except SandboxError as exc:
                logger.error("sandbox_creation_failed", user_id=str(user.id), error=exc.message)
                raise SandboxAssignmentError(
                    "Failed to create sandbox environment", SANDBOX_CREATION_FAILED
                ) from exc
            await self.session.execute(
                insert(Sandbox)
                .values(sandbox_id=sandbox_id, capacity=settings.sandbox_capacity, active_users=0)
                .on_conflict_do_nothing(index_elements=[Sandbox.sandbox_id])
            )

        await self._map_user(user, sandbox_id)
        await self.session.commit()
        metrics.record_sandbox_operation("assign", "success")
        logger.info("sandbox_assigned", user_id=str(user.id), sandbox_id=sandbox_id)
        return sandbox_id

    async def _verify_or_recreate(self, user: AppUser, sandbox_id: str) -> str | None:
        try:
            exists = await self.provider.sandbox_exists(sandbox_id)
        except SandboxUnavailableError as exc:
            # Can't tell a deleted sandbox from an outage; keep the mapping
            logger.warning("sandbox_verify_unavailable", sandbox_id=sandbox_id, error=exc.message)
            return sandbox_id
        except SandboxError as exc:
            logger.warning("sandbox_verify_failed", sandbox_id=sandbox_id, error=exc.message)
            return sandbox_id

        if exists:
            await self._ensure_user_points_at(user, sandbox_id)
            return sandbox_id

        logger.warning("sandbox_missing", user_id=str(user.id), sandbox_id=sandbox_id)
        try:
            new_id = await self.provider.create_sandbox()
        except SandboxError as exc:
            logger.error("sandbox_recreate_failed", sandbox_id=sandbox_id, error=exc.message)
            return None

        await self.migrate_sandbox(sandbox_id, new_id)
        await self._map_user(user, new_id)
        await self.session.commit()
        metrics.record_sandbox_operation("recreate", "success")
        logger.info("sandbox_recreated", old_sandbox_id=sandbox_id, new_sandbox_id=new_id)
        return new_id

    async def _ensure_user_points_at(self, user: AppUser, sandbox_id: str) -> None:
        if await self.get_mapping(user.id) == sandbox_id and user.sandbox_id == sandbox_id:
            return
        await self._map_user(user, sandbox_id)
        await self.session.commit()

    async def migrate_sandbox(self, old_id: str, new_id: str) -> None:
        """Move mappings and projects from a deleted sandbox to its replacement."""
        old = await self.get_sandbox(old_id)
        await self.session.execute(
            insert(Sandbox)
            .values(
                sandbox_id=new_id,
                capacity=old.capacity if old else settings.sandbox_capacity,
                active_users=old.active_users if old else 0,
            )
            .on_conflict_do_nothing(index_elements=[Sandbox.sandbox_id])
        )
        await self.session.execute(
            update(UserSandbox).where(UserSandbox.sandbox_id == old_id).values(sandbox_id=new_id)
        )
        await self.session.execute(
            update(AppUser).where(AppUser.sandbox_id == old_id).values(sandbox_id=new_id)
        )
        await self.session.execute(
            update(Project).where(Project.sandbox_id == old_id).values(sandbox_id=new_id)
        )
        await self.session.execute(delete(Sandbox).where(Sandbox.sandbox_id == old_id))

    async def _find_available(self) -> str | None:
        result = await self.session.execute(
            select(Sandbox.sandbox_id)
            .where(Sandbox.active_users < Sandbox.capacity)
            .order_by(Sandbox.active_users.asc(), Sandbox.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return result.scalar_one_or_none()

    async def _map_user(self, user: AppUser, sandbox_id: str) -> None:
        """Point the user at a sandbox, counting them once per sandbox."""
        previous = await self.get_mapping(user.id)

        stmt = insert(UserSandbox).values(app_user_id=user.id, sandbox_id=sandbox_id)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserSandbox.app_user_id],
            set_={"sandbox_id": stmt.excluded.sandbox_id, "assigned_at": func.now()},
        )
        await self.session.execute(stmt)

        if previous != sandbox_id:
            await self.session.execute(
                update(Sandbox)
                .where(Sandbox.sandbox_id == sandbox_id)
                .values(active_users=Sandbox.active_users + 1, last_assigned_at=func.now())
            )
            if previous:
                await self.session.execute(
                    update(Sandbox)
                    .where(Sandbox.sandbox_id == previous, Sandbox.active_users > 0)
                    .values(active_users=Sandbox.active_users - 1)
                )

        await self.session.execute(
            update(AppUser).where(AppUser.id == user.id).values(sandbox_id=sandbox_id)
        )
