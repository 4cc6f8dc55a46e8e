"""
API Routes - health, sign-in, portfolio, projects and project messages.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    APIError,
    get_current_user,
    get_existing_user,
    get_optional_user,
    get_privy_service,
)
from app.db.models import AppUser
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    DuplicateProjectNameError,
    NoAvailablePortError,
    PaymentRequiredError,
    ProjectNotFoundError,
    SandboxAssignmentError,
    SandboxError,
)
from app.models.api import (
    AllocateRequest,
    AllocateResponse,
    AuthUser,
    HealthResponse,
    MessageListResponse,
    PortfolioResponse,
    PortfolioSandbox,
    PortfolioUser,
    PrivyAuthRequest,
    PrivyAuthResponse,
    ProjectCreateRequest,
    ProjectListResponse,
    ProjectResponse,
    ProjectUpdateRequest,
    SaveMessageRequest,
    SaveMessageResponse,
    SuccessResponse,
)
from app.services.messages import MessageService
from app.services.privy_auth import PrivyAuthService, pick_solana_wallet
from app.services.projects import ProjectService, new_project_id, project_to_out
from app.services.sandbox_pool import SANDBOX_ASSIGNMENT_FAILED, SandboxPoolService
from app.services.sandbox_provider import sandbox_provider
from app.services.users import UserService

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc


# =============================================================================
# Sign-in
# =============================================================================


@router.post("/api/auth/privy", response_model=PrivyAuthResponse)
async def privy_sign_in(
    request: PrivyAuthRequest,
    db: AsyncSession = Depends(get_write_db),
    privy: PrivyAuthService = Depends(get_privy_service),
) -> PrivyAuthResponse:
    """
    Exchange a Privy access token for the app user.

    Upserts the user with the Privy profile (email, preferred Solana wallet)
    and, when Daytona is configured, places them in a shared sandbox. Sandbox
    assignment is best effort; sign-in succeeds without it.
    """
    verification = await privy.verify_token(request.token)
    if not verification.valid or not verification.user_id:
        raise APIError(status.HTTP_401_UNAUTHORIZED, verification.error or "Unauthorized")

    profile = await privy.get_user(verification.user_id)
    wallet = pick_solana_wallet(profile.wallets) if profile else None

    try:
        user = await UserService(db).ensure_user(
            verification.user_id,
            email=profile.email if profile else None,
            wallet_address=wallet.address if wallet else None,
            wallet_provider=wallet.wallet_client_type if wallet else None,
        )
    except SQLAlchemyError as exc:
        logger.error("user_upsert_failed", privy_user_id=verification.user_id, error=str(exc))
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to upsert user") from exc

    sandbox_id = user.sandbox_id
    if sandbox_provider.configured:
        try:
            sandbox_id = await SandboxPoolService(db).assign_sandbox(user)
        except SandboxError as exc:
            logger.warning("sign_in_sandbox_assignment_failed", user_id=str(user.id), error=exc.message)

    logger.info("user_signed_in", user_id=str(user.id), sandbox_id=sandbox_id)
    return PrivyAuthResponse(
        user=AuthUser(
            id=str(user.id),
            email=user.email,
            wallet_address=user.wallet_address,
            sandbox_id=sandbox_id,
        )
    )


# =============================================================================
# Portfolio
# =============================================================================


@router.get("/api/portfolio", response_model=PortfolioResponse)
async def get_portfolio(
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> PortfolioResponse:
    """Profile, assigned sandbox, and projects of the caller."""
    pool = SandboxPoolService(db)
    sandbox_id = await pool.get_mapping(user.id) or user.sandbox_id

    sandbox: PortfolioSandbox | None = None
    if sandbox_id:
        row = await pool.get_sandbox(sandbox_id)
        if row is not None:
            sandbox = PortfolioSandbox(
                sandbox_id=row.sandbox_id,
                capacity=row.capacity,
                active_users=row.active_users,
            )

    try:
        projects = await ProjectService(db).list_projects(user.id)
    except SQLAlchemyError as exc:
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to fetch projects", details=str(exc)
        ) from exc

    return PortfolioResponse(
        user=PortfolioUser(
            id=str(user.id),
            email=user.email,
            wallet_address=user.wallet_address,
            wallet_provider=user.wallet_provider,
            sandbox_id=user.sandbox_id,
        ),
        sandbox=sandbox,
        projects=[project_to_out(project) for project in projects],
    )


# =============================================================================
# Projects
# =============================================================================


@router.get("/api/projects", response_model=ProjectListResponse)
async def list_projects(
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
) -> ProjectListResponse:
    """
    Projects of the caller, newest updated first.

    Anonymous callers see unowned projects only.
    """
    projects = await ProjectService(db).list_projects(user.id if user else None)
    return ProjectListResponse(
        projects=[project_to_out(project, use_project_id=True) for project in projects]
    )


@router.post("/api/projects", response_model=ProjectResponse)
async def create_project(
    request: ProjectCreateRequest,
    user: AppUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> ProjectResponse:
    """
    Create a project in the caller's shared sandbox.

    Past the free allowance a confirmed payment intent for this project id
    is required (402 otherwise).
    """
    if not request.name:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Missing required field: name")

    project_id = new_project_id(request.id)
    projects = ProjectService(db)

    try:
        await projects.ensure_can_create(user.id, project_id)
    except PaymentRequiredError as exc:
        logger.info(
            "project_payment_required",
            user_id=str(user.id),
            projects_used=exc.projects_used,
        )
        raise APIError(
            status.HTTP_402_PAYMENT_REQUIRED,
            "Payment required",
            requiresPayment=True,
            message=str(exc),
            freeProjectsUsed=exc.projects_used,
            freeProjectLimit=exc.limit,
        ) from exc

    try:
        sandbox_id = await SandboxPoolService(db).assign_sandbox(user)
    except SandboxAssignmentError as exc:
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            exc.message,
            details="Could not create Daytona sandbox. Please try again or contact support.",
            code=exc.code,
        ) from exc
    except SandboxError as exc:
        logger.error("project_sandbox_assignment_failed", user_id=str(user.id), error=exc.message)
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Failed to assign sandbox environment",
            details="Could not assign or create a sandbox for this project. Please try again.",
            code=SANDBOX_ASSIGNMENT_FAILED,
        ) from exc

    try:
        project = await projects.create_project(
            user,
            project_id,
            request.name,
            request.prompt,
            request.preview_url,
            sandbox_id,
        )
    except DuplicateProjectNameError as exc:
        raise APIError(
            status.HTTP_409_CONFLICT,
            "A project with this name already exists",
            details=(
                f'You already have a project named "{exc.name}". Please choose a '
                "different name or update the existing project."
            ),
            code="DUPLICATE_PROJECT_NAME",
        ) from exc
    except NoAvailablePortError as exc:
        raise APIError(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc)) from exc
    except ProjectNotFoundError as exc:
        # The id exists but belongs to someone else
        raise APIError(
            status.HTTP_409_CONFLICT, "Failed to create project", details=str(exc)
        ) from exc
    except IntegrityError as exc:
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to create project", details=str(exc.orig)
        ) from exc

    return ProjectResponse(project=project_to_out(project))


@router.post("/api/projects/allocate", response_model=AllocateResponse)
async def allocate_project(
    request: AllocateRequest,
    user: AppUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> AllocateResponse:
    """Ensure the caller's project in a sandbox has a directory and dev port."""
    if not request.sandbox_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Missing sandboxId")

    try:
        project_path, dev_port = await ProjectService(db).allocate(request.sandbox_id, user)
    except ProjectNotFoundError as exc:
        raise APIError(status.HTTP_404_NOT_FOUND, "Project not found") from exc
    except NoAvailablePortError as exc:
        raise APIError(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc)) from exc

    return AllocateResponse(project_path=project_path, dev_port=dev_port)


@router.get("/api/projects/{reference}", response_model=ProjectResponse)
async def get_project(
    reference: str,
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
) -> ProjectResponse:
    """
    One project, by project id or sandbox id.

    Returns {"project": null} rather than 404 when nothing matches. For
    signed-in callers a missing port or path is repaired on read.
    """
    service = ProjectService(db)
    project = await service.resolve_project(reference, user.id if user else None)
    if project is None:
        return ProjectResponse(project=None)

    if user is not None:
        project = await service.repair_project(project, user.id)

    return ProjectResponse(project=project_to_out(project))


@router.put("/api/projects/{reference}", response_model=ProjectResponse)
async def update_project(
    reference: str,
    request: ProjectUpdateRequest,
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
) -> ProjectResponse:
    """Update name, prompt or preview URL."""
    try:
        project = await ProjectService(db).update_project(
            reference, user.id if user else None, request
        )
    except ValueError as exc:
        raise APIError(status.HTTP_400_BAD_REQUEST, str(exc)) from exc
    except ProjectNotFoundError as exc:
        raise APIError(status.HTTP_404_NOT_FOUND, "Project not found") from exc
    except DuplicateProjectNameError as exc:
        raise APIError(
            status.HTTP_409_CONFLICT,
            "A project with this name already exists",
            code="DUPLICATE_PROJECT_NAME",
        ) from exc

    return ProjectResponse(project=project_to_out(project))


@router.delete("/api/projects/{reference}", response_model=SuccessResponse)
async def delete_project(
    reference: str,
    user: AppUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
) -> SuccessResponse:
    await ProjectService(db).delete_project(reference, user.id if user else None)
    return SuccessResponse(success=True)


# =============================================================================
# Project messages
# =============================================================================


@router.get("/api/projects/{reference}/messages", response_model=MessageListResponse)
async def list_messages(
    reference: str,
    user: AppUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> MessageListResponse:
    """Chat transcript of a project, oldest first. Empty when the project is unknown."""
    service = MessageService(db)
    project_id = await service.find_project_id(reference, user.id)
    if project_id is None:
        return MessageListResponse(messages=[])

    return MessageListResponse(messages=await service.list_messages(project_id))


@router.post("/api/projects/{reference}/messages", response_model=SaveMessageResponse)
async def save_message(
    reference: str,
    request: SaveMessageRequest,
    user: AppUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> SaveMessageResponse:
    """Append a message to a project's transcript."""
    if request.message is None or not request.message.type:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Message is required")

    service = MessageService(db)
    project_id = await service.find_project_id(reference, user.id)
    if project_id is None:
        raise APIError(
            status.HTTP_404_NOT_FOUND, "Project not found. Please create the project first."
        )

    try:
        saved = await service.save_message(
            project_id, reference, request.message, request.sequence_number
        )
    except IntegrityError as exc:
        logger.error("message_save_failed", project_id=str(project_id), error=str(exc.orig))
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to save message", details=str(exc.orig)
        ) from exc

    return SaveMessageResponse(success=True, message=saved)
