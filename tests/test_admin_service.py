"""
Tests for AdminService.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import base58
import pytest
from solders.keypair import Keypair

from app.exceptions import WalletNotFoundError
from app.services.admin import AdminService
from app.services.wallets import encrypt_keypair
from tests.conftest import create_mock_project, create_mock_user, make_result


class TestDepositPrivateKey:
    """Tests for decrypting a deposit wallet key."""

    @pytest.mark.asyncio
    async def test_exports_key(self, db_session):
        keypair = Keypair()
        wallet = encrypt_keypair(keypair)
        user = create_mock_user(
            deposit_wallet_address=wallet.public_key,
            deposit_wallet_secret_key_encrypted=wallet.encrypted_secret_key,
        )
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))

        response = await AdminService(db_session).get_deposit_private_key(wallet.public_key)

        assert response.public_key == wallet.public_key
        assert response.private_key.base58 == base58.b58encode(bytes(keypair)).decode()
        assert response.private_key.array == list(bytes(keypair))
        assert response.user_id == str(user.id)

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, db_session):
        with pytest.raises(WalletNotFoundError):
            await AdminService(db_session).get_deposit_private_key("Unknown1111")

    @pytest.mark.asyncio
    async def test_key_not_stored(self, db_session):
        user = create_mock_user(deposit_wallet_secret_key_encrypted=None)
        db_session.execute = AsyncMock(return_value=make_result(scalar=user))
        with pytest.raises(WalletNotFoundError, match="Private key not stored"):
            await AdminService(db_session).get_deposit_private_key("Dep1111")


class TestFixUserProjects:
    """Tests for linking unowned projects."""

    @pytest.mark.asyncio
    async def test_nothing_to_fix(self, db_session):
        response = await AdminService(db_session).fix_user_projects(create_mock_user())
        assert response.fixed == 0
        assert response.message == "No unlinked projects found"
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_links_projects_in_mapped_sandbox(self, db_session):
        user = create_mock_user()
        project = create_mock_project(sandbox_id="sandbox-1", user_id=None)
        linked = SimpleNamespace(id=project.id, name="My Site", sandbox_id="sandbox-1")
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalars=[project]),
                make_result(scalar="sandbox-1"),
                make_result(rows=[linked]),
            ]
        )

        response = await AdminService(db_session).fix_user_projects(user)

        assert response.fixed == 1
        assert response.message == "Fixed 1 project(s)"
        assert response.projects[0].user_id == str(user.id)
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_adopts_sandbox_of_oldest_project(self, db_session):
        user = create_mock_user()
        oldest = create_mock_project(sandbox_id="sandbox-old", user_id=None)
        newer = create_mock_project(sandbox_id="sandbox-other", user_id=None)
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalars=[oldest, newer]),
                make_result(scalar=None),
                make_result(),
                make_result(),
                make_result(),
                make_result(),
                make_result(rows=[SimpleNamespace(id=uuid4(), name="A", sandbox_id="sandbox-old")]),
            ]
        )

        response = await AdminService(db_session).fix_user_projects(user)

        assert response.projects[0].sandbox_id == "sandbox-old"
        assert db_session.execute.await_count == 7
