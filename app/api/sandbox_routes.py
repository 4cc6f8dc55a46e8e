"""
Sandbox Routes - file, search, log, preview and dev server tools over a
project's Daytona sandbox.

Provider failures map to HTTP as follows:
- sandbox gone: 404
- Daytona unreachable or the sandbox could not be started: 503
- a shell command that failed inside the sandbox: 500
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import APIError, get_optional_user
from app.db.models import AppUser
from app.db.session import get_write_db
from app.exceptions import (
    DevServerPortConflictError,
    ProjectNotFoundError,
    SandboxCommandError,
    SandboxError,
    SandboxNotFoundError,
    SandboxPathNotFoundError,
    SandboxUnavailableError,
)
from app.models.api import (
    ExploreRequest,
    ExploreResponse,
    LogsRequest,
    LogsResponse,
    PreviewUrlRequest,
    PreviewUrlResponse,
    RestartServerRequest,
    RestartServerResponse,
    SandboxStartRequest,
    SandboxStartResponse,
    SaveFileRequest,
    SaveFileResponse,
    SearchRequest,
    SearchResponse,
    ViewFileRequest,
    ViewFileResponse,
)
from app.observability.metrics import metrics
from app.services.sandbox_tools import SandboxToolsService

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["sandbox"])


def _tools(db: AsyncSession) -> SandboxToolsService:
    service = SandboxToolsService(db)
    if not service.provider.configured:
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Missing DAYTONA_API_KEY")
    return service


def _sandbox_error(exc: SandboxError, operation: str) -> APIError:
    """Translate a provider failure into the HTTP error the client expects."""
    metrics.record_sandbox_operation(operation, type(exc).__name__)
    if isinstance(exc, SandboxNotFoundError):
        return APIError(status.HTTP_404_NOT_FOUND, exc.message)
    if isinstance(exc, SandboxPathNotFoundError):
        extra = {"tried": exc.tried} if exc.tried else {}
        return APIError(status.HTTP_404_NOT_FOUND, exc.message, **extra)
    if isinstance(exc, SandboxCommandError):
        logger.error("sandbox_command_failed", operation=operation, output=exc.output[:500])
        return APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message, details=exc.output)

    logger.warning("sandbox_unavailable", operation=operation, error=exc.message)
    return APIError(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Sandbox is not available",
        details=exc.message,
    )


@router.post("/sandbox/start", response_model=SandboxStartResponse)
async def start_sandbox(
    request: SandboxStartRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SandboxStartResponse:
    if not request.sandbox_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Sandbox ID is required")

    service = _tools(db)
    try:
        return await service.start_sandbox(request.sandbox_id)
    except SandboxNotFoundError as exc:
        raise APIError(status.HTTP_404_NOT_FOUND, f"Sandbox {request.sandbox_id} not found") from exc
    except SandboxError as exc:
        raise _sandbox_error(exc, "start") from exc


@router.post("/view-file", response_model=ViewFileResponse)
async def view_file(
    request: ViewFileRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ViewFileResponse:
    """Read a file from the project directory, trying a few path spellings."""
    if not request.sandbox_id or not request.file_path:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Sandbox ID and file path are required")

    service = _tools(db)
    try:
        return await service.view_file(request.sandbox_id, request.file_path, request.project_path)
    except SandboxError as exc:
        raise _sandbox_error(exc, "view_file") from exc


@router.post("/save-file", response_model=SaveFileResponse)
async def save_file(
    request: SaveFileRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SaveFileResponse:
    if not request.sandbox_id or not request.file_path or request.content is None:
        raise APIError(
            status.HTTP_400_BAD_REQUEST, "sandboxId, filePath and content are required"
        )

    service = _tools(db)
    try:
        return await service.save_file(
            request.sandbox_id, request.file_path, request.content, request.project_path
        )
    except SandboxError as exc:
        raise _sandbox_error(exc, "save_file") from exc


@router.post("/search-sandbox", response_model=SearchResponse)
async def search_sandbox(
    request: SearchRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SearchResponse:
    """Search project files with ripgrep (grep when rg is missing)."""
    if not request.sandbox_id or not request.query:
        raise APIError(status.HTTP_400_BAD_REQUEST, "sandboxId and query are required")

    service = _tools(db)
    try:
        results = await service.search(
            request.sandbox_id, request.query, request.max_results, request.project_path
        )
    except SandboxError as exc:
        raise _sandbox_error(exc, "search") from exc

    return SearchResponse(results=results)


@router.post("/explore-sandbox", response_model=ExploreResponse)
async def explore_sandbox(
    request: ExploreRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ExploreResponse:
    """File tree and page/API routes of the project's Next.js app directory."""
    if not request.sandbox_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Sandbox ID is required")

    service = _tools(db)
    try:
        return await service.explore(request.sandbox_id, request.project_path)
    except SandboxError as exc:
        raise _sandbox_error(exc, "explore") from exc


@router.post("/get-logs", response_model=LogsResponse)
async def get_logs(
    request: LogsRequest,
    db: AsyncSession = Depends(get_write_db),
) -> LogsResponse:
    if not request.sandbox_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Sandbox ID is required")

    service = _tools(db)
    try:
        return await service.get_logs(request.sandbox_id, request.project_path, request.lines)
    except SandboxError as exc:
        raise _sandbox_error(exc, "get_logs") from exc


@router.post("/get-preview-url", response_model=PreviewUrlResponse)
async def get_preview_url(
    request: PreviewUrlRequest,
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
) -> PreviewUrlResponse:
    """
    Preview link for the project's dev server.

    The port comes from the project row, then the request, then 3000. Errors
    carry a flag telling the client whether to recreate the project
    (sandboxNotFound) or retry later (apiUnreachable, sandboxStopped).
    """
    if not request.sandbox_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Sandbox ID is required")

    service = _tools(db)
    try:
        return await service.preview_url(
            request.sandbox_id, request.port, user.id if user else None
        )
    except SandboxNotFoundError as exc:
        raise APIError(
            status.HTTP_404_NOT_FOUND,
            f"Sandbox {request.sandbox_id} was not found in Daytona. It may have been "
            "deleted. Please create a new project.",
            sandboxStopped=False,
            sandboxNotFound=True,
        ) from exc
    except SandboxUnavailableError as exc:
        metrics.record_sandbox_operation("preview", "unreachable")
        raise APIError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            exc.message or "Daytona API is unreachable. Please check your Daytona connection.",
            sandboxStopped=False,
            apiUnreachable=True,
        ) from exc
    except SandboxError as exc:
        metrics.record_sandbox_operation("preview", "stopped")
        raise APIError(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            exc.message or "Sandbox is stopped and could not be started",
            sandboxStopped=True,
        ) from exc


@router.post("/restart-server", response_model=RestartServerResponse)
async def restart_server(
    request: RestartServerRequest,
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
) -> RestartServerResponse:
    """
    Kill whatever holds the project's dev port and start `npm run dev` again.

    The stored project supplies the port and path when it exists; otherwise
    the request must carry both.
    """
    if not request.sandbox_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Missing required field: sandboxId")

    service = _tools(db)
    try:
        result = await service.restart_dev_server(
            request.sandbox_id,
            project_path=request.project_path,
            dev_port=request.dev_port,
            user_id=user.id if user else None,
        )
    except ProjectNotFoundError as exc:
        raise APIError(
            status.HTTP_404_NOT_FOUND,
            "Project not found and no devPort or projectPath provided. Cannot restart server.",
        ) from exc
    except DevServerPortConflictError as exc:
        metrics.record_sandbox_operation("restart_server", "port_conflict")
        raise APIError(
            status.HTTP_409_CONFLICT,
            exc.message,
            portConflict=True,
            logs=f"Port {exc.port} blocked by process: {exc.process}",
        ) from exc
    except SandboxError as exc:
        raise _sandbox_error(exc, "restart_server") from exc

    outcome = "success" if result.success else "not_running"
    metrics.record_sandbox_operation("restart_server", outcome)
    return result
