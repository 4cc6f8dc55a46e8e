"""
Tests for SandboxProvider against a fake Daytona client.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from daytona import DaytonaError

from app.exceptions import SandboxError, SandboxNotFoundError, SandboxUnavailableError
from app.services.sandbox_provider import (
    SandboxProvider,
    is_not_found_error,
    is_transient_error,
    sandbox_state,
)


@pytest.fixture
def client(fake_sandbox) -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=fake_sandbox)
    client.create = AsyncMock(return_value=MagicMock(id="sandbox-new"))
    client.close = AsyncMock()
    return client


@pytest.fixture
def provider(client) -> SandboxProvider:
    return SandboxProvider(client=client, retries=2, retry_delay=0, start_settle_seconds=0)


class TestErrorClassification:
    @pytest.mark.parametrize(
        "message",
        ["502 Bad Gateway", "connect ECONNREFUSED", "Request failed", "read timed out"],
    )
    def test_transient(self, message):
        assert is_transient_error(DaytonaError(message)) is True

    def test_not_transient(self):
        assert is_transient_error(DaytonaError("invalid image")) is False

    def test_not_found(self):
        assert is_not_found_error(DaytonaError("Sandbox abc not found")) is True
        err = DaytonaError("gone")
        err.status_code = 404
        assert is_not_found_error(err) is True

    def test_state_from_enum_value(self):
        sandbox = MagicMock(state=MagicMock(value="STOPPED"))
        assert sandbox_state(sandbox) == "stopped"


class TestLifecycle:
    """Tests for create, lookup and start."""

    @pytest.mark.asyncio
    async def test_create_returns_id(self, provider, client):
        assert await provider.create_sandbox() == "sandbox-new"
        params = client.create.await_args.args[0]
        assert params.public is True

    @pytest.mark.asyncio
    async def test_create_failure(self, provider, client):
        client.create = AsyncMock(side_effect=DaytonaError("quota exceeded"))
        with pytest.raises(SandboxError):
            await provider.create_sandbox()

    @pytest.mark.asyncio
    async def test_exists(self, provider):
        assert await provider.sandbox_exists("sandbox-1") is True

    @pytest.mark.asyncio
    async def test_missing_sandbox(self, provider, client):
        client.get = AsyncMock(side_effect=DaytonaError("Sandbox sandbox-1 not found"))
        assert await provider.sandbox_exists("sandbox-1") is False

    @pytest.mark.asyncio
    async def test_outage_is_not_absence(self, provider, client):
        client.get = AsyncMock(side_effect=DaytonaError("503 Service Unavailable"))
        with pytest.raises(SandboxUnavailableError):
            await provider.sandbox_exists("sandbox-1")

    @pytest.mark.asyncio
    async def test_running_sandbox_is_not_restarted(self, provider, fake_sandbox):
        sandbox, started = await provider.ensure_sandbox_running("sandbox-1")
        assert sandbox is fake_sandbox
        assert started is False
        fake_sandbox.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stopped_sandbox_is_started(self, provider, fake_sandbox):
        fake_sandbox.state = "stopped"
        _, started = await provider.ensure_sandbox_running("sandbox-1")
        assert started is True
        fake_sandbox.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_state_is_checked_with_command(self, provider, fake_sandbox):
        fake_sandbox.get_user_home_dir = AsyncMock(side_effect=DaytonaError("sandbox is not running"))
        _, started = await provider.ensure_sandbox_running("sandbox-1")
        assert started is True

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, provider, client, fake_sandbox):
        client.get = AsyncMock(side_effect=[DaytonaError("502 Bad Gateway"), fake_sandbox])
        sandbox, _ = await provider.ensure_sandbox_running("sandbox-1")
        assert sandbox is fake_sandbox
        assert client.get.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_outage(self, provider, client):
        client.get = AsyncMock(side_effect=DaytonaError("connection refused"))
        with pytest.raises(SandboxUnavailableError, match="unreachable"):
            await provider.ensure_sandbox_running("sandbox-1")
        assert client.get.await_count == 3

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, provider, client):
        client.get = AsyncMock(side_effect=DaytonaError("Sandbox sandbox-1 not found"))
        with pytest.raises(SandboxNotFoundError):
            await provider.ensure_sandbox_running("sandbox-1")
        assert client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_lock_timeout(self, client):
        provider = SandboxProvider(client=client, lock_timeout=0.01, start_settle_seconds=0)
        lock = provider._lock_for("sandbox-1")
        await lock.acquire()
        try:
            with pytest.raises(SandboxUnavailableError, match="Timed out"):
                await provider.ensure_sandbox_running("sandbox-1")
        finally:
            lock.release()

    @pytest.mark.asyncio
    async def test_concurrent_starts_are_serialized(self, provider, client, fake_sandbox):
        results = await asyncio.gather(
            provider.ensure_sandbox_running("sandbox-1"),
            provider.ensure_sandbox_running("sandbox-1"),
        )
        assert len(results) == 2
        assert provider._locks == {}
        assert provider._lock_users == {}

    @pytest.mark.asyncio
    async def test_lock_dropped_after_failure(self, provider, client):
        client.get = AsyncMock(side_effect=DaytonaError("connection refused"))
        with pytest.raises(SandboxUnavailableError):
            await provider.ensure_sandbox_running("sandbox-1")
        assert provider._locks == {}

    @pytest.mark.asyncio
    async def test_lock_kept_while_another_caller_holds_it(self, client):
        provider = SandboxProvider(client=client, lock_timeout=0.01, start_settle_seconds=0)
        lock = provider._lock_for("sandbox-1")
        await lock.acquire()
        with pytest.raises(SandboxUnavailableError):
            await provider.ensure_sandbox_running("sandbox-1")
        assert provider._locks["sandbox-1"] is lock
        lock.release()


class TestCommands:
    @pytest.mark.asyncio
    async def test_exec(self, provider, fake_sandbox):
        fake_sandbox.process.exec = AsyncMock(return_value=MagicMock(exit_code=1, result="boom"))
        result = await provider.exec(fake_sandbox, "false", cwd="/tmp")
        assert result.exit_code == 1
        assert result.output == "boom"
        assert fake_sandbox.process.exec.await_args.kwargs["cwd"] == "/tmp"

    @pytest.mark.asyncio
    async def test_home_dir_strips_slash(self, provider, fake_sandbox):
        fake_sandbox.get_user_home_dir = AsyncMock(return_value="/home/daytona/")
        assert await provider.home_dir(fake_sandbox) == "/home/daytona"

    @pytest.mark.asyncio
    async def test_preview_link(self, provider, fake_sandbox):
        link = await provider.preview_link(fake_sandbox, 3000)
        assert link.url == "https://3000-sandbox-1.proxy.daytona.work"
        assert link.token == "tok"

    @pytest.mark.asyncio
    async def test_close(self, provider, client):
        await provider.close()
        client.close.assert_awaited_once()
        assert provider._client is None
