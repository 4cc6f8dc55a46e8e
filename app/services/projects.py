"""
Project Service - project rows, on-sandbox paths, and dev server ports.

Projects are addressed by the client either by project id or by the id of
the sandbox hosting them. Ports are unique per sandbox; the unique index is
the final arbiter and allocation only picks a likely-free candidate.
"""

import asyncio
import re
import time
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AppUser, PaymentIntent, Project, UserSandbox
from app.exceptions import (
    DuplicateProjectNameError,
    NoAvailablePortError,
    PaymentRequiredError,
    ProjectNotFoundError,
)
from app.models.api import IntentStatus, ProjectOut, ProjectStatus, ProjectUpdateRequest

logger = get_logger(__name__)

PORT_RANGE_START = 3000
PORT_SCAN_END = 3199
PORT_SCAN_CANDIDATES = 200
PORT_RESCAN_END = 3999
FALLBACK_PORT_BASE = 3200
FALLBACK_PORT_SPAN = 799
PORT_ALLOCATION_RETRIES = 10

NAME_CONSTRAINT = "uniq_user_project_name"
PORT_CONSTRAINT = "uniq_sandbox_dev_port"
PRIMARY_KEY_CONSTRAINT = "projects_pkey"


def normalize_id(value: str) -> str:
    return re.sub(r"-{2,}", "-", value)


def normalize_path(path: str) -> str:
    return re.sub(r"-{2,}", "-", re.sub(r"/+", "/", path))


def build_project_path(user_id: UUID | str, sandbox_id: str, project_id: UUID | str) -> str:
    """Absolute project directory inside the sandbox."""
    return normalize_path(
        f"{settings.projects_root}/{normalize_id(str(user_id))}/"
        f"{normalize_id(sandbox_id)}/{normalize_id(str(project_id))}"
    )


def parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def base_port(user_id: UUID | str) -> int:
    """
    Starting port for a user's scan.

    Spreads users over 3000-3099 using the last three digits found in the
    first segment of their id.
    """
    digits = re.sub(r"\D", "", str(user_id).split("-")[0])
    return PORT_RANGE_START + int(digits[-3:] or "0") % 100


def scan_candidates(start: int) -> list[int]:
    """Candidate ports from start, wrapping past 3199 back to 3000."""
    span = PORT_SCAN_END - PORT_RANGE_START + 1
    return [
        PORT_RANGE_START + (start - PORT_RANGE_START + offset) % span
        for offset in range(PORT_SCAN_CANDIDATES)
    ]


def fallback_port() -> int:
    return FALLBACK_PORT_BASE + int(time.time() * 1000) % FALLBACK_PORT_SPAN


def violated_constraint(exc: IntegrityError) -> str | None:
    text = str(exc.orig)
    for name in (NAME_CONSTRAINT, PORT_CONSTRAINT, PRIMARY_KEY_CONSTRAINT):
        if name in text:
            return name
    return None


def _epoch_ms(value: datetime | None) -> int:
    return int(value.timestamp() * 1000) if value else 0


def project_to_out(project: Project, use_project_id: bool = False) -> ProjectOut:
    """Client view of a project. Single-project responses use the sandbox id as id."""
    return ProjectOut(
        id=str(project.id) if use_project_id else project.sandbox_id,
        name=project.name,
        prompt=project.prompt or "",
        preview_url=project.preview_url,
        sandbox_id=project.sandbox_id,
        project_path=project.project_path,
        dev_port=project.dev_port,
        status=project.status,
        created_at=_epoch_ms(project.created_at),
        updated_at=_epoch_ms(project.updated_at),
    )


class ProjectService:
    """Project CRUD scoped to an owner (or to unowned rows for anonymous callers)."""

    def __init__(self, session: AsyncSession, retry_delay: float = 0.1) -> None:
        self.session = session
        self.retry_delay = retry_delay

    # ========================================================================
    # Ports
    # ========================================================================

    async def _taken_ports(self, sandbox_id: str) -> set[int]:
        result = await self.session.execute(
            select(Project.dev_port).where(
                Project.sandbox_id == sandbox_id, Project.dev_port.isnot(None)
            )
        )
        return {port for port in result.scalars().all() if port is not None}

    async def allocate_port(self, sandbox_id: str, user_id: UUID | str) -> int:
        """Pick a free dev port in a sandbox, starting from the user's base port."""
        start = base_port(user_id)
        for attempt in range(1, PORT_ALLOCATION_RETRIES + 1):
            taken = await self._taken_ports(sandbox_id)
            for port in scan_candidates(start):
                if port not in taken:
                    return port
            logger.warning("port_scan_exhausted", sandbox_id=sandbox_id, attempt=attempt)
            await asyncio.sleep(self.retry_delay * attempt)

        port = fallback_port()
        logger.warning("port_fallback_used", sandbox_id=sandbox_id, port=port)
        return port

    async def first_free_port(self, sandbox_id: str) -> int:
        taken = await self._taken_ports(sandbox_id)
        for port in range(PORT_RANGE_START, PORT_RESCAN_END + 1):
            if port not in taken:
                return port
        raise NoAvailablePortError(sandbox_id)

    # ========================================================================
    # Lookup
    # ========================================================================

    async def list_projects(self, user_id: UUID | None) -> list[Project]:
        owner = Project.user_id == user_id if user_id else Project.user_id.is_(None)
        result = await self.session.execute(
            select(Project).where(owner).order_by(Project.updated_at.desc())
        )
        return list(result.scalars().all())

    async def resolve_project(self, reference: str, user_id: UUID | None) -> Project | None:
        """
        Find a project by project id, else by sandbox id (newest first).

        Anonymous callers only see unowned projects, matched by sandbox id.
        """
        if user_id is None:
            result = await self.session.execute(
                select(Project)
                .where(Project.sandbox_id == reference, Project.user_id.is_(None))
                .order_by(Project.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

        project_id = parse_uuid(reference)
        if project_id is not None:
            result = await self.session.execute(
                select(Project).where(Project.id == project_id, Project.user_id == user_id)
            )
            project = result.scalar_one_or_none()
            if project is not None:
                return project

        result = await self.session.execute(
            select(Project)
            .where(Project.sandbox_id == reference, Project.user_id == user_id)
            .order_by(Project.created_at.desc())
        )
        matches = list(result.scalars().all())
        if len(matches) > 1:
            logger.warning(
                "multiple_projects_for_sandbox",
                sandbox_id=reference,
                user_id=str(user_id),
                count=len(matches),
                using=str(matches[0].id),
            )
        return matches[0] if matches else None

    async def repair_project(self, project: Project, user_id: UUID) -> Project:
        """Fill in a missing dev port or a missing/broken project path."""
        values: dict[str, object] = {}
        if project.dev_port is None:
            values["dev_port"] = await self.allocate_port(project.sandbox_id, user_id)
        if not project.project_path or "undefined" in project.project_path:
            values["project_path"] = build_project_path(user_id, project.sandbox_id, project.id)
        if not values:
            return project

        try:
            await self.session.execute(
                update(Project).where(Project.id == project.id).values(**values)
            )
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning("project_repair_conflict", project_id=str(project.id), error=str(exc.orig))
            return project

        logger.info("project_repaired", project_id=str(project.id), fields=sorted(values))
        for key, value in values.items():
            setattr(project, key, value)
        return project

    # ========================================================================
    # Create
    # ========================================================================

    async def ensure_can_create(self, user_id: UUID, project_id: UUID | None) -> int:
        """
        Check the free project allowance. Returns the caller's project count.

        Raises:
            PaymentRequiredError: If the user is at the free limit and has no
                confirmed payment for this project id
        """
        result = await self.session.execute(
            select(func.count()).select_from(Project).where(Project.user_id == user_id)
        )
        count = int(result.scalar_one())
        limit = settings.free_project_limit
        if count < limit:
            return count

        if project_id is not None:
            result = await self.session.execute(
                select(PaymentIntent.id)
                .where(
                    PaymentIntent.user_id == user_id,
                    PaymentIntent.project_id == project_id,
                    PaymentIntent.status == IntentStatus.CONFIRMED.value,
                )
                .limit(1)
            )
            if result.scalar_one_or_none() is not None:
                return count

        raise PaymentRequiredError(count, limit)

    async def _insert(self, values: dict[str, object]) -> Project:
        result = await self.session.execute(insert(Project).values(**values).returning(Project))
        project = result.scalar_one()
        await self.session.commit()
        return project

    async def create_project(
        self,
        user: AppUser,
        project_id: UUID,
        name: str,
        prompt: str | None,
        preview_url: str | None,
        sandbox_id: str,
    ) -> Project:
        """
        Insert a project in the user's sandbox with a fresh path and port.

        Raises:
            DuplicateProjectNameError: If the user already has a project with this name
            NoAvailablePortError: If the sandbox has no free port left
        """
        sandbox_id = normalize_id(sandbox_id)
        values: dict[str, object] = {
            "id": project_id,
            "sandbox_id": sandbox_id,
            "name": name,
            "prompt": prompt or "",
            "preview_url": preview_url or None,
            "user_id": user.id,
            "project_path": build_project_path(user.id, sandbox_id, project_id),
            "dev_port": await self.allocate_port(sandbox_id, user.id),
            "status": ProjectStatus.CREATED.value,
        }

        try:
            project = await self._insert(values)
        except IntegrityError as exc:
            await self.session.rollback()
            constraint = violated_constraint(exc)
            if constraint == NAME_CONSTRAINT:
                raise DuplicateProjectNameError(name) from exc
            if constraint == PRIMARY_KEY_CONSTRAINT:
                return await self._update_existing(user, project_id, name, prompt, preview_url)
            if constraint != PORT_CONSTRAINT:
                raise

            values["dev_port"] = await self.first_free_port(sandbox_id)
            logger.warning(
                "project_port_conflict",
                sandbox_id=sandbox_id,
                retry_port=values["dev_port"],
            )
            try:
                project = await self._insert(values)
            except IntegrityError as retry_exc:
                await self.session.rollback()
                if violated_constraint(retry_exc) == NAME_CONSTRAINT:
                    raise DuplicateProjectNameError(name) from retry_exc
                raise

        logger.info(
            "project_created",
            project_id=str(project.id),
            user_id=str(user.id),
            sandbox_id=sandbox_id,
            dev_port=project.dev_port,
        )
        return project

    async def _update_existing(
        self,
        user: AppUser,
        project_id: UUID,
        name: str,
        prompt: str | None,
        preview_url: str | None,
    ) -> Project:
        """A re-sent create for a project the user already owns updates it instead."""
        result = await self.session.execute(
            update(Project)
            .where(Project.id == project_id, Project.user_id == user.id)
            .values(
                name=name,
                prompt=prompt or "",
                preview_url=preview_url or None,
                updated_at=func.now(),
            )
            .returning(Project)
        )
        project = result.scalar_one_or_none()
        if project is None:
            await self.session.rollback()
            raise ProjectNotFoundError(str(project_id))
        await self.session.commit()
        logger.info("project_create_updated_existing", project_id=str(project_id))
        return project

    # ========================================================================
    # Update / delete
    # ========================================================================

    def _match_clause(self, reference: str, user_id: UUID | None):
        owner = Project.user_id == user_id if user_id else Project.user_id.is_(None)
        clauses = [and_(Project.sandbox_id == reference, owner)]
        project_id = parse_uuid(reference)
        if project_id is not None:
            clauses.append(and_(Project.id == project_id, owner))
        return or_(*clauses)

    async def update_project(
        self, reference: str, user_id: UUID | None, request: ProjectUpdateRequest
    ) -> Project:
        """
        Apply the fields present in the request.

        Raises:
            ValueError: If the request carries no updatable field
            ProjectNotFoundError: If nothing matched
            DuplicateProjectNameError: If the new name is already in use
        """
        values: dict[str, object] = {}
        provided = request.model_fields_set
        if "name" in provided and request.name is not None:
            values["name"] = request.name
        if "prompt" in provided and request.prompt is not None:
            values["prompt"] = request.prompt
        if "preview_url" in provided:
            values["preview_url"] = request.preview_url or None
        if not values:
            raise ValueError("No fields to update")

        try:
            result = await self.session.execute(
                update(Project)
                .where(self._match_clause(reference, user_id))
                .values(**values, updated_at=func.now())
                .returning(Project)
            )
            projects = list(result.scalars().all())
            if not projects:
                await self.session.rollback()
                raise ProjectNotFoundError(reference)
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicateProjectNameError(str(values.get("name", ""))) from exc

        if len(projects) > 1:
            logger.warning("multiple_projects_updated", reference=reference, count=len(projects))
        return projects[0]

    async def delete_project(self, reference: str, user_id: UUID | None) -> int:
        """Delete matching projects. Returns how many went; zero is not an error."""
        result = await self.session.execute(
            delete(Project).where(self._match_clause(reference, user_id)).returning(Project.id)
        )
        deleted = list(result.scalars().all())
        await self.session.commit()
        logger.info("project_deleted", reference=reference, count=len(deleted))
        return len(deleted)

    # ========================================================================
    # Allocation
    # ========================================================================

    async def allocate(self, sandbox_id: str, user: AppUser) -> tuple[str, int]:
        """
        Make sure a project has a path and port. Returns (project_path, dev_port).

        Raises:
            ProjectNotFoundError: If the user has no project in this sandbox
        """
        result = await self.session.execute(
            select(Project)
            .where(Project.sandbox_id == sandbox_id, Project.user_id == user.id)
            .order_by(Project.created_at.desc())
            .limit(1)
        )
        project = result.scalars().first()
        if project is None:
            raise ProjectNotFoundError(sandbox_id)

        if project.project_path and project.dev_port is not None:
            return project.project_path, project.dev_port

        mapping = await self.session.execute(
            select(UserSandbox.sandbox_id).where(UserSandbox.app_user_id == user.id)
        )
        assigned = normalize_id(mapping.scalar_one_or_none() or project.sandbox_id)
        path = build_project_path(user.id, assigned, project.id)
        port = project.dev_port
        if port is None:
            port = await self.allocate_port(assigned, user.id)

        try:
            await self.session.execute(
                update(Project)
                .where(Project.id == project.id)
                .values(project_path=path, dev_port=port)
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            port = await self.first_free_port(project.sandbox_id)
            await self.session.execute(
                update(Project)
                .where(Project.id == project.id)
                .values(project_path=path, dev_port=port)
            )
            await self.session.commit()

        logger.info(
            "project_allocated",
            project_id=str(project.id),
            sandbox_id=assigned,
            project_path=path,
            dev_port=port,
        )
        return path, port


def new_project_id(raw: str | None) -> UUID:
    """Client-supplied project id, or a fresh one when missing or unusable."""
    if raw and raw != "undefined":
        parsed = parse_uuid(raw)
        if parsed is not None:
            return parsed
    return uuid4()
