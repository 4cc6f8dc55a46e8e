"""
Sandbox Provider - shared Daytona client and sandbox lifecycle helpers.

One AsyncDaytona client is created lazily per process. Starting a sandbox is
serialized per sandbox id so concurrent requests don't race to start the
same container.
"""

import asyncio

from daytona import AsyncDaytona, AsyncSandbox, CreateSandboxFromImageParams, DaytonaConfig, DaytonaError
from structlog import get_logger

from app.config import settings
from app.exceptions import SandboxError, SandboxNotFoundError, SandboxUnavailableError
from app.models.domain import CommandResult, PreviewLink
from app.observability.metrics import metrics

logger = get_logger(__name__)

TRANSIENT_MARKERS = (
    "502",
    "503",
    "request failed",
    "econnrefused",
    "etimedout",
    "bad gateway",
    "service unavailable",
    "connection refused",
    "timed out",
)

STOPPED_MARKERS = ("not running", "stopped")


def is_transient_error(exc: BaseException) -> bool:
    """True when an SDK error looks like the Daytona API being unreachable."""
    text = str(exc).lower()
    return any(marker in text for marker in TRANSIENT_MARKERS)


def is_not_found_error(exc: BaseException) -> bool:
    if getattr(exc, "status_code", None) == 404:
        return True
    return "not found" in str(exc).lower()


def sandbox_state(sandbox: AsyncSandbox) -> str:
    state = getattr(sandbox, "state", None)
    return str(getattr(state, "value", state) or "").lower()


class SandboxProvider:
    """Thin async wrapper over the Daytona SDK."""

    def __init__(
        self,
        client: AsyncDaytona | None = None,
        retries: int = 2,
        retry_delay: float = 2.0,
        start_settle_seconds: float = 3.0,
        lock_timeout: float | None = None,
    ) -> None:
        self._client = client
        self.retries = retries
        self.retry_delay = retry_delay
        self.start_settle_seconds = start_settle_seconds
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else settings.sandbox_lock_timeout_seconds
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(settings.DAYTONA_API_KEY)

    def _get_client(self) -> AsyncDaytona:
        if self._client is None:
            if not settings.DAYTONA_API_KEY:
                raise SandboxError("Missing DAYTONA_API_KEY")
            config = DaytonaConfig(
                api_key=settings.DAYTONA_API_KEY,
                api_url=settings.DAYTONA_API_URL or None,
                target=settings.DAYTONA_TARGET or None,
            )
            self._client = AsyncDaytona(config)
        return self._client

    def _translate(self, exc: DaytonaError, sandbox_id: str | None = None) -> SandboxError:
        if sandbox_id and is_not_found_error(exc):
            return SandboxNotFoundError(sandbox_id)
        if is_transient_error(exc):
            return SandboxUnavailableError(str(exc))
        return SandboxError(str(exc))

    async def create_sandbox(self) -> str:
        """Create a public sandbox from the configured image and return its id."""
        client = self._get_client()
        try:
            sandbox = await client.create(
                CreateSandboxFromImageParams(image=settings.sandbox_image, public=True)
            )
        except DaytonaError as exc:
            metrics.record_sandbox_operation("create", "error")
            logger.error("sandbox_create_failed", error=str(exc))
            raise self._translate(exc) from exc

        metrics.record_sandbox_operation("create", "success")
        logger.info("sandbox_created", sandbox_id=sandbox.id)
        return str(sandbox.id)

    async def get_sandbox(self, sandbox_id: str) -> AsyncSandbox:
        client = self._get_client()
        try:
            return await client.get(sandbox_id)
        except DaytonaError as exc:
            raise self._translate(exc, sandbox_id) from exc

    async def sandbox_exists(self, sandbox_id: str) -> bool:
        """
        Check whether Daytona still knows the sandbox.

        Raises:
            SandboxUnavailableError: If the API can't be reached, so callers
                don't mistake an outage for a deleted sandbox
        """
        try:
            await self.get_sandbox(sandbox_id)
        except SandboxNotFoundError:
            return False
        return True

    def _lock_for(self, sandbox_id: str) -> asyncio.Lock:
        lock = self._locks.get(sandbox_id)
        if lock is None:
            lock = self._locks[sandbox_id] = asyncio.Lock()
        self._lock_users[sandbox_id] = self._lock_users.get(sandbox_id, 0) + 1
        return lock

    def _release_lock_ref(self, sandbox_id: str) -> None:
        remaining = self._lock_users.get(sandbox_id, 1) - 1
        if remaining > 0:
            self._lock_users[sandbox_id] = remaining
            return
        self._lock_users.pop(sandbox_id, None)
        self._locks.pop(sandbox_id, None)

    async def _start(self, sandbox: AsyncSandbox) -> None:
        try:
            await sandbox.start()
        except DaytonaError as exc:
            metrics.record_sandbox_operation("start", "error")
            raise self._translate(exc, str(sandbox.id)) from exc
        metrics.record_sandbox_operation("start", "success")
        logger.info("sandbox_started", sandbox_id=sandbox.id)
        if self.start_settle_seconds:
            await asyncio.sleep(self.start_settle_seconds)

    async def _ensure_running_once(self, sandbox_id: str) -> tuple[AsyncSandbox, bool]:
        sandbox = await self.get_sandbox(sandbox_id)
        if sandbox_state(sandbox) not in ("", "started"):
            await self._start(sandbox)
            return sandbox, True

        # State can lag behind the container; check it with a command
        try:
            await sandbox.get_user_home_dir()
        except DaytonaError as exc:
            if any(marker in str(exc).lower() for marker in STOPPED_MARKERS):
                await self._start(sandbox)
                return sandbox, True
            raise self._translate(exc, sandbox_id) from exc
        return sandbox, False

    async def _ensure_running_with_retries(self, sandbox_id: str) -> tuple[AsyncSandbox, bool]:
        attempt = 0
        while True:
            try:
                return await self._ensure_running_once(sandbox_id)
            except SandboxUnavailableError as exc:
                if attempt >= self.retries:
                    metrics.record_sandbox_operation("ensure_running", "unreachable")
                    raise SandboxUnavailableError(
                        f"Daytona API is unreachable ({exc.message})"
                    ) from exc
                attempt += 1
                delay = self.retry_delay * attempt
                logger.warning(
                    "sandbox_api_retry",
                    sandbox_id=sandbox_id,
                    attempt=attempt,
                    delay=delay,
                    error=exc.message,
                )
                await asyncio.sleep(delay)

    async def ensure_sandbox_running(self, sandbox_id: str) -> tuple[AsyncSandbox, bool]:
        """
        Fetch a sandbox, starting it if it is stopped.

        Returns (sandbox, was_started). Transient API failures are retried
        with a linear backoff.

        Raises:
            SandboxNotFoundError: If the sandbox no longer exists
            SandboxUnavailableError: If the API stays unreachable or the lock
                can't be acquired in time
        """
        lock = self._lock_for(sandbox_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
            except asyncio.TimeoutError as exc:
                raise SandboxUnavailableError(
                    f"Timed out waiting for sandbox {sandbox_id} to become available"
                ) from exc

            try:
                return await self._ensure_running_with_retries(sandbox_id)
            finally:
                lock.release()
        finally:
            self._release_lock_ref(sandbox_id)

    async def home_dir(self, sandbox: AsyncSandbox) -> str:
        try:
            return str(await sandbox.get_user_home_dir()).rstrip("/")
        except DaytonaError as exc:
            raise self._translate(exc, str(sandbox.id)) from exc

    async def exec(
        self,
        sandbox: AsyncSandbox,
        command: str,
        cwd: str | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        try:
            response = await sandbox.process.exec(command, cwd=cwd, timeout=timeout)
        except DaytonaError as exc:
            raise self._translate(exc, str(sandbox.id)) from exc
        return CommandResult(exit_code=int(response.exit_code or 0), output=response.result or "")

    async def preview_link(self, sandbox: AsyncSandbox, port: int) -> PreviewLink:
        try:
            link = await sandbox.get_preview_link(port)
        except DaytonaError as exc:
            raise self._translate(exc, str(sandbox.id)) from exc
        return PreviewLink(url=link.url, token=getattr(link, "token", None))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


sandbox_provider = SandboxProvider()
