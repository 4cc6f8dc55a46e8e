"""
Payment Routes - Solana payment intents, settlement, and deposit wallets.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import hmac
import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import APIError, get_current_user, get_existing_user
from app.config import settings
from app.db.models import AppUser
from app.db.session import get_write_db
from app.exceptions import (
    BlockmindError,
    DatabaseError,
    DuplicateSettlementError,
    EncryptionError,
    InsufficientPaymentError,
    IntentNotFoundError,
    InvalidIntentStateError,
    InvalidPrivateKeyError,
    SolanaRPCError,
    TransactionNotFoundError,
    UnsupportedTokenError,
    WalletConflictError,
)
from app.models.api import (
    BalanceResponse,
    CreateIntentRequest,
    CreateIntentResponse,
    DepositWalletResponse,
    HeliusWebhookEvent,
    ImportDepositWalletResponse,
    ImportKeyRequest,
    PollRequest,
    PollResponse,
    VerifyRequest,
    VerifyResponse,
    WebhookAckResponse,
)
from app.observability.metrics import metrics
from app.services.payments import PaymentService
from app.services.projects import parse_uuid

logger = get_logger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

INVALID_KEY_MESSAGE = (
    "Invalid private key format. Please provide a base58-encoded private key or JSON array."
)


@router.post(
    "/create-intent",
    response_model=CreateIntentResponse,
    response_model_exclude_none=True,
)
async def create_intent(
    request: CreateIntentRequest,
    background_tasks: BackgroundTasks,
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> CreateIntentResponse:
    """
    Create a pending payment intent for a project.

    Users under the free project limit creating a new project (no projectId)
    get {"freeProject": true} instead of an intent.
    """
    project_id = None
    if request.project_id:
        project_id = parse_uuid(request.project_id)
        if project_id is None:
            raise APIError(status.HTTP_400_BAD_REQUEST, "Invalid projectId")

    service = PaymentService(db, background_tasks)
    try:
        return await service.create_intent(
            user, project_id, request.token_symbol, request.credits_to_purchase
        )
    except UnsupportedTokenError as exc:
        raise APIError(status.HTTP_400_BAD_REQUEST, str(exc)) from exc
    except (DatabaseError, EncryptionError) as exc:
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message) from exc


@router.post(
    "/helius-webhook",
    response_model=WebhookAckResponse,
    response_model_exclude_none=True,
)
async def helius_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
) -> WebhookAckResponse:
    """
    Receive Helius account-update notifications for deposit wallets.

    Helius may post a single event or a batch. Each event is processed on its own,
    so a failing event does not block the rest of the batch. Failures are still
    acknowledged with 200 so Helius does not redeliver a payload it can never
    process.
    """
    expected_secret = settings.HELIUS_WEBHOOK_SECRET
    if expected_secret:
        provided = request.headers.get("x-helius-webhook-secret", "")
        if not hmac.compare_digest(provided, expected_secret):
            logger.warning("helius_webhook_unauthorized")
            metrics.record_webhook_event("unauthorized")
            raise APIError(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        payload = json.loads(await request.body())
        raw_events = payload if isinstance(payload, list) else [payload]
        events = [HeliusWebhookEvent.model_validate(raw) for raw in raw_events]
    except (ValueError, ValidationError) as exc:
        logger.warning("helius_webhook_invalid_payload", error=str(exc))
        metrics.record_webhook_event("invalid")
        return WebhookAckResponse(received=True, error="Invalid webhook payload")

    logger.info(
        "helius_webhook_received",
        events=len(events),
        types=sorted({event.webhook_type or "unknown" for event in events}),
    )
    if not any(event.webhook_type == "ACCOUNT_UPDATE" for event in events):
        metrics.record_webhook_event("ignored")
        return WebhookAckResponse(received=True)

    service = PaymentService(db)
    settled = 0
    failed = 0
    last_error: str | None = None
    for event in events:
        try:
            settled += await service.handle_webhook_event(event)
        except Exception as exc:
            await db.rollback()
            failed += 1
            last_error = str(exc)
            logger.exception(
                "helius_webhook_event_failed", signature=event.signature, error=last_error
            )
            metrics.record_error(type(exc).__name__, "helius_webhook")

    return WebhookAckResponse(
        received=True,
        processed=True,
        settled=settled,
        failed=failed or None,
        error=last_error,
    )


@router.post("/poll", response_model=PollResponse, response_model_exclude_none=True)
async def poll_intent(
    request: PollRequest,
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> PollResponse:
    """Check the chain for a payment to a pending intent's deposit wallet."""
    if not request.intent_id:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Missing intentId")

    try:
        return await PaymentService(db).poll(user, request.intent_id)
    except IntentNotFoundError as exc:
        raise APIError(status.HTTP_404_NOT_FOUND, "Intent not found") from exc


@router.post("/verify", response_model=VerifyResponse)
async def verify_payment(
    request: VerifyRequest,
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> VerifyResponse:
    """Settle an intent against a transaction signature supplied by the client."""
    if not request.intent_id or not request.signature:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Missing intentId or signature")

    try:
        return await PaymentService(db).verify(user, request.intent_id, request.signature)
    except (IntentNotFoundError, InvalidIntentStateError) as exc:
        raise APIError(
            status.HTTP_400_BAD_REQUEST, "Invalid or already processed intent"
        ) from exc
    except DuplicateSettlementError as exc:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Payment already verified") from exc
    except TransactionNotFoundError as exc:
        raise APIError(status.HTTP_404_NOT_FOUND, "Transaction not found") from exc
    except InsufficientPaymentError as exc:
        raise APIError(
            status.HTTP_400_BAD_REQUEST,
            "Insufficient payment amount",
            expected=exc.expected,
            received=exc.received,
        ) from exc
    except UnsupportedTokenError as exc:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Invalid token mint") from exc
    except SolanaRPCError as exc:
        raise APIError(status.HTTP_503_SERVICE_UNAVAILABLE, exc.message) from exc


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    background_tasks: BackgroundTasks,
    user: AppUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> BalanceResponse:
    """
    Credits, free project allowance, and the next project's price.

    Creates the user on first call, and their deposit wallet with it.
    """
    return await PaymentService(db, background_tasks).get_balance(user)


@router.post("/ensure-deposit-wallet", response_model=DepositWalletResponse)
async def ensure_deposit_wallet(
    background_tasks: BackgroundTasks,
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> DepositWalletResponse:
    try:
        address, created = await PaymentService(db, background_tasks).ensure_deposit_wallet(user)
    except (DatabaseError, EncryptionError) as exc:
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to create deposit wallet"
        ) from exc

    message = "Deposit wallet created successfully" if created else "Deposit wallet already exists"
    return DepositWalletResponse(deposit_wallet=address, message=message)


@router.post("/import-wallet", response_model=ImportDepositWalletResponse)
async def import_deposit_wallet(
    request: ImportKeyRequest,
    background_tasks: BackgroundTasks,
    user: AppUser = Depends(get_existing_user),
    db: AsyncSession = Depends(get_write_db),
) -> ImportDepositWalletResponse:
    """Replace the deposit wallet with a keypair the user already controls."""
    if not request.private_key:
        raise APIError(status.HTTP_400_BAD_REQUEST, "Private key is required")

    service = PaymentService(db, background_tasks)
    try:
        address = await service.import_deposit_wallet(user, request.private_key)
    except InvalidPrivateKeyError as exc:
        raise APIError(status.HTTP_400_BAD_REQUEST, INVALID_KEY_MESSAGE) from exc
    except WalletConflictError as exc:
        raise APIError(
            status.HTTP_409_CONFLICT,
            "This wallet address is already in use by another account",
        ) from exc
    except BlockmindError as exc:
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to import wallet") from exc

    return ImportDepositWalletResponse(
        success=True, deposit_wallet=address, message="Wallet imported successfully"
    )
