"""
Message Service - per-project chat transcript.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Project, ProjectMessage
from app.models.api import MessagePayload, SavedMessage
from app.services.projects import parse_uuid

logger = get_logger(__name__)

SEQUENCE_RETRIES = 3


def message_to_payload(message: ProjectMessage) -> MessagePayload:
    """Wire shape of a stored message. Empty columns are left out."""
    return MessagePayload(
        type=message.message_type,
        content=message.content or None,
        name=message.name or None,
        input=message.input or None,
        result=message.result or None,
        message=message.error_message or None,
        preview_url=message.preview_url or None,
        sandbox_id=message.sandbox_id or None,
        image_url=message.image_url or None,
        image_prompt=message.image_prompt or None,
        sequence_number=message.sequence_number,
    )


class MessageService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_project_id(self, reference: str, user_id: UUID) -> UUID | None:
        """Owned project by project id, else the newest owned project in the sandbox."""
        project_id = parse_uuid(reference)
        if project_id is not None:
            result = await self.session.execute(
                select(Project.id).where(Project.id == project_id, Project.user_id == user_id)
            )
            found = result.scalar_one_or_none()
            if found is not None:
                return found

        result = await self.session.execute(
            select(Project.id)
            .where(Project.sandbox_id == reference, Project.user_id == user_id)
            .order_by(Project.created_at.desc())
        )
        matches = list(result.scalars().all())
        if len(matches) > 1:
            logger.warning(
                "multiple_projects_for_sandbox",
                sandbox_id=reference,
                count=len(matches),
                using=str(matches[0]),
            )
        return matches[0] if matches else None

    async def list_messages(self, project_id: UUID) -> list[MessagePayload]:
        result = await self.session.execute(
            select(ProjectMessage)
            .where(ProjectMessage.project_id == project_id)
            .order_by(ProjectMessage.sequence_number.asc())
        )
        return [message_to_payload(message) for message in result.scalars().all()]

    async def _next_sequence(self, project_id: UUID) -> int:
        result = await self.session.execute(
            select(func.max(ProjectMessage.sequence_number)).where(
                ProjectMessage.project_id == project_id
            )
        )
        last = result.scalar_one_or_none()
        return 0 if last is None else int(last) + 1

    async def save_message(
        self,
        project_id: UUID,
        sandbox_id: str,
        message: MessagePayload,
        sequence_number: int | None = None,
    ) -> SavedMessage:
        """
        Append a message.

        An explicit sequence number that's already taken raises IntegrityError.
        Without one, the next number is max+1, retried if a concurrent writer
        took it first.
        """
        attempts = 1 if sequence_number is not None else SEQUENCE_RETRIES
        for attempt in range(1, attempts + 1):
            sequence = (
                sequence_number
                if sequence_number is not None
                else await self._next_sequence(project_id)
            )
            stmt = (
                insert(ProjectMessage)
                .values(
                    project_id=project_id,
                    sandbox_id=sandbox_id,
                    message_type=message.type,
                    content=message.content or None,
                    name=message.name or None,
                    input=message.input or None,
                    result=message.result or None,
                    error_message=message.message or None,
                    preview_url=message.preview_url or None,
                    image_url=message.image_url or None,
                    image_prompt=message.image_prompt or None,
                    sequence_number=sequence,
                )
                .returning(ProjectMessage.id, ProjectMessage.sequence_number)
            )
            try:
                result = await self.session.execute(stmt)
                row = result.one()
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                if attempt == attempts:
                    raise
                logger.info("message_sequence_conflict", project_id=str(project_id), sequence=sequence)
                continue

            return SavedMessage(id=str(row.id), sequence_number=row.sequence_number)

        raise RuntimeError("unreachable")
