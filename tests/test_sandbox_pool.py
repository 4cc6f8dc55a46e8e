"""
Tests for SandboxPoolService.
"""

from unittest.mock import AsyncMock

import pytest

from app.exceptions import SandboxAssignmentError, SandboxError, SandboxUnavailableError
from app.services.sandbox_pool import SANDBOX_CREATION_FAILED, SandboxPoolService
from tests.conftest import create_mock_sandbox, create_mock_user, make_result


@pytest.fixture
def pool(db_session, mock_provider) -> SandboxPoolService:
    return SandboxPoolService(db_session, provider=mock_provider)


class TestAssignSandbox:
    """Tests for placing a user in a sandbox."""

    @pytest.mark.asyncio
    async def test_existing_mapping_is_kept(self, pool, mock_provider):
        user = create_mock_user(sandbox_id="sandbox-1")
        pool.get_mapping = AsyncMock(return_value="sandbox-1")
        pool._map_user = AsyncMock()

        assert await pool.assign_sandbox(user) == "sandbox-1"
        mock_provider.sandbox_exists.assert_awaited_once_with("sandbox-1")
        mock_provider.create_sandbox.assert_not_awaited()
        pool._map_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reuses_sandbox_with_room(self, pool, db_session, mock_provider):
        user = create_mock_user()
        pool.get_mapping = AsyncMock(return_value=None)
        pool._find_available = AsyncMock(return_value="sandbox-shared")
        pool._map_user = AsyncMock()

        assert await pool.assign_sandbox(user) == "sandbox-shared"
        pool._map_user.assert_awaited_once_with(user, "sandbox-shared")
        mock_provider.create_sandbox.assert_not_awaited()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_creates_when_pool_is_full(self, pool, db_session, mock_provider):
        user = create_mock_user()
        pool.get_mapping = AsyncMock(return_value=None)
        pool._find_available = AsyncMock(return_value=None)
        pool._map_user = AsyncMock()

        assert await pool.assign_sandbox(user) == "sandbox-new"
        # Sandbox row insert
        db_session.execute.assert_awaited_once()
        pool._map_user.assert_awaited_once_with(user, "sandbox-new")

    @pytest.mark.asyncio
    async def test_creation_failure(self, pool, mock_provider):
        pool.get_mapping = AsyncMock(return_value=None)
        pool._find_available = AsyncMock(return_value=None)
        mock_provider.create_sandbox = AsyncMock(side_effect=SandboxError("quota"))

        with pytest.raises(SandboxAssignmentError) as exc_info:
            await pool.assign_sandbox(create_mock_user())
        assert exc_info.value.code == SANDBOX_CREATION_FAILED

    @pytest.mark.asyncio
    async def test_outage_keeps_mapping(self, pool, mock_provider):
        pool.get_mapping = AsyncMock(return_value="sandbox-1")
        mock_provider.sandbox_exists = AsyncMock(side_effect=SandboxUnavailableError("down"))

        assert await pool.assign_sandbox(create_mock_user()) == "sandbox-1"
        mock_provider.create_sandbox.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deleted_sandbox_is_recreated(self, pool, db_session, mock_provider):
        user = create_mock_user(sandbox_id="sandbox-old")
        pool.get_mapping = AsyncMock(return_value="sandbox-old")
        pool.migrate_sandbox = AsyncMock()
        pool._map_user = AsyncMock()
        mock_provider.sandbox_exists = AsyncMock(return_value=False)

        assert await pool.assign_sandbox(user) == "sandbox-new"
        pool.migrate_sandbox.assert_awaited_once_with("sandbox-old", "sandbox-new")
        pool._map_user.assert_awaited_once_with(user, "sandbox-new")

    @pytest.mark.asyncio
    async def test_failed_recreate_falls_back_to_pool(self, pool, mock_provider):
        pool.get_mapping = AsyncMock(return_value="sandbox-old")
        pool._find_available = AsyncMock(return_value="sandbox-shared")
        pool._map_user = AsyncMock()
        mock_provider.sandbox_exists = AsyncMock(return_value=False)
        mock_provider.create_sandbox = AsyncMock(side_effect=SandboxError("quota"))

        assert await pool.assign_sandbox(create_mock_user()) == "sandbox-shared"


class TestMigrateAndMap:
    """Tests for the bookkeeping statements."""

    @pytest.mark.asyncio
    async def test_migrate_moves_everything(self, pool, db_session):
        old = create_mock_sandbox("sandbox-old", capacity=5, active_users=3)
        db_session.execute = AsyncMock(return_value=make_result(scalar=old))

        await pool.migrate_sandbox("sandbox-old", "sandbox-new")

        # lookup, insert new, mappings, users, projects, delete old
        assert db_session.execute.await_count == 6

    @pytest.mark.asyncio
    async def test_map_new_user_increments_count(self, pool, db_session):
        user = create_mock_user()
        pool.get_mapping = AsyncMock(return_value=None)

        await pool._map_user(user, "sandbox-1")

        # upsert mapping, increment, update user
        assert db_session.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_map_moved_user_adjusts_both_counts(self, pool, db_session):
        pool.get_mapping = AsyncMock(return_value="sandbox-old")
        await pool._map_user(create_mock_user(), "sandbox-1")
        assert db_session.execute.await_count == 4

    @pytest.mark.asyncio
    async def test_remap_same_sandbox_does_not_double_count(self, pool, db_session):
        pool.get_mapping = AsyncMock(return_value="sandbox-1")
        await pool._map_user(create_mock_user(), "sandbox-1")
        assert db_session.execute.await_count == 2
