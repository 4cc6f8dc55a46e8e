"""
Tests for MessageService.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.api import MessagePayload
from app.services.messages import MessageService, message_to_payload
from tests.conftest import create_mock_message, make_result


def saved_row(sequence: int) -> MagicMock:
    return make_result(one=MagicMock(id=uuid4(), sequence_number=sequence))


def duplicate() -> IntegrityError:
    return IntegrityError("INSERT", {}, Exception("uniq_project_sequence"))


class TestMessagePayload:
    def test_empty_columns_are_dropped(self):
        message = create_mock_message(message_type="tool_use", content="")
        message.name = "write_file"
        message.input = {"path": "app/page.tsx"}

        payload = message_to_payload(message)

        assert payload.type == "tool_use"
        assert payload.content is None
        assert payload.input == {"path": "app/page.tsx"}
        dumped = payload.model_dump(by_alias=True, exclude_none=True)
        assert "content" not in dumped
        assert dumped["sequenceNumber"] == 0


class TestFindProject:
    @pytest.mark.asyncio
    async def test_by_project_id(self, db_session):
        project_id = uuid4()
        db_session.execute = AsyncMock(return_value=make_result(scalar=project_id))
        assert await MessageService(db_session).find_project_id(str(project_id), uuid4()) == project_id

    @pytest.mark.asyncio
    async def test_by_sandbox_id_newest_first(self, db_session):
        newest, older = uuid4(), uuid4()
        db_session.execute = AsyncMock(return_value=make_result(scalars=[newest, older]))
        assert await MessageService(db_session).find_project_id("sb-1", uuid4()) == newest

    @pytest.mark.asyncio
    async def test_not_found(self, db_session):
        assert await MessageService(db_session).find_project_id("sb-1", uuid4()) is None


class TestSaveMessage:
    """Tests for sequence assignment."""

    @pytest.mark.asyncio
    async def test_first_message_gets_zero(self, db_session):
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=None), saved_row(0)])
        saved = await MessageService(db_session).save_message(
            uuid4(), "sb-1", MessagePayload(type="user", content="hi")
        )
        assert saved.sequence_number == 0
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_next_is_max_plus_one(self, db_session):
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=4), saved_row(5)])
        saved = await MessageService(db_session).save_message(
            uuid4(), "sb-1", MessagePayload(type="assistant", content="ok")
        )
        assert saved.sequence_number == 5

    @pytest.mark.asyncio
    async def test_conflict_retries(self, db_session):
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=4), duplicate(), make_result(scalar=5), saved_row(6)]
        )
        saved = await MessageService(db_session).save_message(
            uuid4(), "sb-1", MessagePayload(type="user", content="hi")
        )
        assert saved.sequence_number == 6
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_three_conflicts(self, db_session):
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=1), duplicate(),
                make_result(scalar=2), duplicate(),
                make_result(scalar=3), duplicate(),
            ]
        )
        with pytest.raises(IntegrityError):
            await MessageService(db_session).save_message(
                uuid4(), "sb-1", MessagePayload(type="user", content="hi")
            )
        assert db_session.rollback.await_count == 3

    @pytest.mark.asyncio
    async def test_explicit_sequence_is_not_retried(self, db_session):
        db_session.execute = AsyncMock(side_effect=[duplicate()])
        with pytest.raises(IntegrityError):
            await MessageService(db_session).save_message(
                uuid4(), "sb-1", MessagePayload(type="user"), sequence_number=2
            )
        assert db_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_list_messages_in_order(self, db_session):
        project_id = uuid4()
        messages = [create_mock_message(project_id, sequence_number=i) for i in range(3)]
        db_session.execute = AsyncMock(return_value=make_result(scalars=messages))

        listed = await MessageService(db_session).list_messages(project_id)

        assert [m.sequence_number for m in listed] == [0, 1, 2]
