"""
Payment Service - payment intents, on-chain detection, and settlement.

Settlement is idempotent per transaction signature:
1. Insert the settlement row (signature is UNIQUE)
2. Confirm the intent with UPDATE ... WHERE status = 'pending'
3. Mark the linked project paid and grant credits with an atomic upsert
4. Commit once

A duplicate signature or an intent confirmed concurrently rolls the whole
unit back.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AppUser, PaymentIntent, PaymentSettlement, Project, UserCredits
from app.exceptions import (
    DatabaseError,
    DuplicateSettlementError,
    EncryptionError,
    InsufficientPaymentError,
    IntentNotFoundError,
    InvalidIntentStateError,
    SolanaRPCError,
    TransactionNotFoundError,
    UnsupportedTokenError,
    WalletConflictError,
)
from app.models.api import (
    BalanceResponse,
    BlockmindTokenInfo,
    CreateIntentResponse,
    HeliusWebhookEvent,
    IntentInfo,
    IntentStatus,
    NextProjectPrice,
    PollResponse,
    ProjectStatus,
    SettlementInfo,
    TokenSymbol,
    VerifyResponse,
)
from app.models.domain import LAMPORTS_PER_SOL, IncomingTransfer, SettlementResult
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.helius_webhook import register_deposit_wallet
from app.services.pricing import (
    TOKEN_CONFIGS,
    build_solana_pay_url,
    check_blockmind_discount,
    convert_sol_to_token,
    get_project_price,
    get_token_mint,
    parse_token_symbol,
    record_token_balance,
    token_amount_raw,
)
from app.services.solana_client import (
    SolanaClient,
    associated_token_address,
    fee_payer,
    native_balance_delta,
    token_balance_delta,
)
from app.services.wallets import encrypt_keypair, generate_deposit_wallet, parse_private_key

logger = get_logger(__name__)

# Accept transfers down to 99% of the expected amount
PAYMENT_TOLERANCE = 0.01
POLL_SIGNATURE_LIMIT = 10


def meets_expected(received: float, expected: float) -> bool:
    return received >= expected * (1 - PAYMENT_TOLERANCE)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def transfers_from_event(event: HeliusWebhookEvent) -> list[IncomingTransfer]:
    """Flatten a webhook event into incoming transfers with a destination."""
    if not event.signature:
        return []

    transfers: list[IncomingTransfer] = []
    for native in event.native_transfers:
        if native.destination and native.amount > 0:
            transfers.append(
                IncomingTransfer(
                    deposit_wallet=native.destination,
                    amount=native.amount,
                    token_symbol=TokenSymbol.SOL.value,
                    token_mint=None,
                    signature=event.signature,
                    slot=event.slot,
                )
            )
    for token in event.token_transfers:
        if token.destination and token.mint and token.token_amount > 0:
            transfers.append(
                IncomingTransfer(
                    deposit_wallet=token.destination,
                    amount=token.token_amount,
                    token_symbol=token.mint,
                    token_mint=token.mint,
                    signature=event.signature,
                    slot=event.slot,
                )
            )
    return transfers


class PaymentService:
    """Payment intents and their settlement against on-chain transfers."""

    def __init__(
        self,
        session: AsyncSession,
        background_tasks: BackgroundTasks | None = None,
    ) -> None:
        self.session = session
        self.background_tasks = background_tasks

    # ========================================================================
    # Deposit wallets
    # ========================================================================

    def _schedule_registration(self, address: str) -> None:
        if self.background_tasks is not None:
            self.background_tasks.add_task(register_deposit_wallet, address)

    async def ensure_deposit_wallet(self, user: AppUser) -> tuple[str, bool]:
        """
        Return the user's deposit wallet, generating one on first use.

        Returns (address, created). The update only applies while the column
        is still empty, so concurrent callers converge on one wallet.
        """
        if user.deposit_wallet_address:
            return user.deposit_wallet_address, False

        wallet = generate_deposit_wallet()
        try:
            result = await self.session.execute(
                update(AppUser)
                .where(AppUser.id == user.id, AppUser.deposit_wallet_address.is_(None))
                .values(
                    deposit_wallet_address=wallet.public_key,
                    deposit_wallet_secret_key_encrypted=wallet.encrypted_secret_key,
                    updated_at=func.now(),
                )
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("deposit_wallet_create_failed", user_id=str(user.id), error=str(exc))
            raise DatabaseError("Failed to create deposit wallet") from exc

        if result.rowcount == 0:
            await self.session.refresh(user)
            if user.deposit_wallet_address:
                return user.deposit_wallet_address, False
            raise DatabaseError("Failed to create deposit wallet")

        user.deposit_wallet_address = wallet.public_key
        user.deposit_wallet_secret_key_encrypted = wallet.encrypted_secret_key
        logger.info("deposit_wallet_created", user_id=str(user.id), wallet=wallet.public_key)
        self._schedule_registration(wallet.public_key)
        return wallet.public_key, True

    async def import_deposit_wallet(self, user: AppUser, private_key: str | list[int]) -> str:
        """
        Replace the deposit wallet with a user-supplied keypair.

        Raises:
            InvalidPrivateKeyError: If the key can't be parsed
            WalletConflictError: If another user already receives on this address
        """
        keypair = parse_private_key(private_key)
        imported = encrypt_keypair(keypair)

        result = await self.session.execute(
            select(AppUser.id).where(
                AppUser.deposit_wallet_address == imported.public_key,
                AppUser.id != user.id,
            )
        )
        if result.scalar_one_or_none() is not None:
            raise WalletConflictError(imported.public_key)

        try:
            await self.session.execute(
                update(AppUser)
                .where(AppUser.id == user.id)
                .values(
                    deposit_wallet_address=imported.public_key,
                    deposit_wallet_secret_key_encrypted=imported.encrypted_secret_key,
                    updated_at=func.now(),
                )
            )
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise WalletConflictError(imported.public_key) from exc

        logger.info("deposit_wallet_imported", user_id=str(user.id), wallet=imported.public_key)
        self._schedule_registration(imported.public_key)
        return imported.public_key

    # ========================================================================
    # Intents
    # ========================================================================

    async def _count_projects(self, user_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Project).where(Project.user_id == user_id)
        )
        return int(result.scalar_one())

    async def create_intent(
        self,
        user: AppUser,
        project_id: UUID | None,
        token_symbol: str,
        credits_to_purchase: int = 0,
    ) -> CreateIntentResponse:
        """
        Create a pending payment intent, or report that the project is free.

        Raises:
            UnsupportedTokenError: Unknown symbol or token without a mint
            DatabaseError: Deposit wallet or intent could not be stored
        """
        symbol = parse_token_symbol(token_symbol)
        token_mint = get_token_mint(symbol)
        if symbol is not TokenSymbol.SOL and token_mint is None:
            raise UnsupportedTokenError(symbol.value)

        deposit_wallet, _created = await self.ensure_deposit_wallet(user)

        project_count = await self._count_projects(user.id)
        if project_count < settings.free_project_limit and project_id is None:
            remaining = settings.free_project_limit - project_count
            plural = "s" if remaining > 1 else ""
            return CreateIntentResponse(
                free_project=True,
                message=f"You have {remaining} free project{plural} remaining!",
            )

        price, discount = await get_project_price(user.wallet_address)
        await self._record_discount(user, discount)

        amount_sol = price.amount_sol
        amount_token = convert_sol_to_token(amount_sol, symbol, price.sol_price_usd)
        expires_at = _utc_now() + timedelta(seconds=settings.payment_intent_ttl_seconds)

        intent = PaymentIntent(
            user_id=user.id,
            project_id=project_id,
            amount_usd_cents=price.amount_usd_cents,
            amount_sol_lamports=price.amount_sol_lamports,
            amount_token_ui=Decimal(str(round(amount_token, 9))),
            credits_to_grant=credits_to_purchase,
            token_symbol=symbol.value,
            token_mint=token_mint,
            deposit_wallet=deposit_wallet,
            cluster=settings.SOLANA_CLUSTER,
            status=IntentStatus.PENDING.value,
            expires_at=expires_at,
        )
        self.session.add(intent)
        try:
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("payment_intent_create_failed", user_id=str(user.id), error=str(exc))
            raise DatabaseError("Failed to create payment intent") from exc

        metrics.record_intent_created(symbol.value)
        logger.info(
            "payment_intent_created",
            intent_id=str(intent.id),
            user_id=str(user.id),
            token=symbol.value,
            amount_usd_cents=price.amount_usd_cents,
            has_discount=price.has_discount,
        )

        return CreateIntentResponse(
            intent=IntentInfo(
                id=str(intent.id),
                deposit_wallet=deposit_wallet,
                amount_usd=price.amount_usd_cents / 100,
                amount_sol=amount_sol,
                amount_token=amount_token,
                token_symbol=symbol.value,
                token_mint=token_mint,
                has_discount=price.has_discount,
                expires_at=expires_at.isoformat(),
                solana_pay_url=build_solana_pay_url(
                    deposit_wallet, symbol, amount_sol, amount_token, token_mint
                ),
            )
        )

    async def _get_user_intent(self, user_id: UUID, intent_id: str) -> PaymentIntent:
        try:
            parsed = UUID(intent_id)
        except ValueError as exc:
            raise IntentNotFoundError(intent_id) from exc

        result = await self.session.execute(
            select(PaymentIntent).where(
                PaymentIntent.id == parsed, PaymentIntent.user_id == user_id
            )
        )
        intent = result.scalar_one_or_none()
        if intent is None:
            raise IntentNotFoundError(intent_id)
        return intent

    async def _settlement_exists(self, signature: str) -> bool:
        result = await self.session.execute(
            select(PaymentSettlement.id).where(PaymentSettlement.signature == signature)
        )
        return result.scalar_one_or_none() is not None

    # ========================================================================
    # Settlement
    # ========================================================================

    async def _grant_credits(self, user_id: UUID, credits: int) -> None:
        stmt = insert(UserCredits).values(user_id=user_id, credits=credits)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserCredits.user_id],
            set_={
                "credits": UserCredits.credits + stmt.excluded.credits,
                "updated_at": func.now(),
            },
        )
        await self.session.execute(stmt)

    async def settle(
        self,
        intent: PaymentIntent,
        signature: str,
        amount_raw: int,
        amount_ui: float,
        source: str,
        slot: int | None = None,
        payer_wallet: str | None = None,
    ) -> SettlementResult:
        """
        Record a settlement and confirm its intent in one transaction.

        Raises:
            DuplicateSettlementError: Signature already settled
            InvalidIntentStateError: Intent no longer pending
        """
        with trace_operation(
            "payment.settle",
            intent_id=str(intent.id),
            signature=signature,
            source=source,
        ):
            try:
                async with self.session.begin_nested():
                    self.session.add(
                        PaymentSettlement(
                            intent_id=intent.id,
                            signature=signature,
                            slot=slot,
                            amount_raw=Decimal(amount_raw),
                            amount_ui=Decimal(str(amount_ui)),
                            token_symbol=intent.token_symbol,
                            token_mint=intent.token_mint,
                            payer_wallet=payer_wallet,
                            deposit_wallet=intent.deposit_wallet,
                        )
                    )
                    await self.session.flush()

                    confirmed = await self.session.execute(
                        update(PaymentIntent)
                        .where(
                            PaymentIntent.id == intent.id,
                            PaymentIntent.status == IntentStatus.PENDING.value,
                        )
                        .values(status=IntentStatus.CONFIRMED.value, updated_at=func.now())
                    )
                    if confirmed.rowcount == 0:
                        raise InvalidIntentStateError(intent.id, "not pending")

                    if intent.project_id is not None:
                        await self.session.execute(
                            update(Project)
                            .where(Project.id == intent.project_id)
                            .values(status=ProjectStatus.PAID.value, updated_at=func.now())
                        )

                    if intent.credits_to_grant > 0:
                        await self._grant_credits(intent.user_id, intent.credits_to_grant)
            except IntegrityError as exc:
                logger.info("settlement_duplicate_signature", signature=signature, source=source)
                raise DuplicateSettlementError(signature) from exc

            await self.session.commit()

        metrics.record_settlement(intent.token_symbol, source, intent.amount_usd_cents)
        logger.info(
            "payment_settled",
            intent_id=str(intent.id),
            signature=signature,
            source=source,
            token=intent.token_symbol,
            amount_ui=amount_ui,
        )
        return SettlementResult(
            intent_id=intent.id,
            signature=signature,
            amount_ui=amount_ui,
            token_symbol=intent.token_symbol,
        )

    # ========================================================================
    # Webhook
    # ========================================================================

    def _transfer_matches(self, transfer: IncomingTransfer, intent: PaymentIntent) -> bool:
        if transfer.is_native and intent.token_symbol == TokenSymbol.SOL.value:
            return meets_expected(transfer.amount, intent.amount_sol_lamports or 0)
        if transfer.token_mint and intent.token_mint == transfer.token_mint:
            return meets_expected(transfer.amount, float(intent.amount_token_ui or 0))
        return False

    async def process_transfer(
        self, transfer: IncomingTransfer, source: str = "webhook"
    ) -> SettlementResult | None:
        """
        Settle the newest pending intent a transfer satisfies.

        Transfers to unknown wallets, or with no matching intent, are ignored.
        """
        result = await self.session.execute(
            select(AppUser.id).where(AppUser.deposit_wallet_address == transfer.deposit_wallet)
        )
        user_id = result.scalar_one_or_none()
        if user_id is None:
            logger.debug("transfer_unknown_wallet", wallet=transfer.deposit_wallet)
            return None

        result = await self.session.execute(
            select(PaymentIntent)
            .where(
                PaymentIntent.user_id == user_id,
                PaymentIntent.deposit_wallet == transfer.deposit_wallet,
                PaymentIntent.status == IntentStatus.PENDING.value,
            )
            .order_by(PaymentIntent.created_at.desc())
        )
        intents = list(result.scalars().all())
        if not intents:
            logger.info("transfer_no_pending_intents", wallet=transfer.deposit_wallet)
            return None

        for intent in intents:
            if not self._transfer_matches(transfer, intent):
                continue

            if transfer.is_native:
                amount_raw = int(transfer.amount)
                amount_ui = transfer.amount / LAMPORTS_PER_SOL
            else:
                amount_raw = token_amount_raw(transfer.amount, TokenSymbol(intent.token_symbol))
                amount_ui = transfer.amount

            try:
                return await self.settle(
                    intent,
                    transfer.signature,
                    amount_raw=amount_raw,
                    amount_ui=amount_ui,
                    source=source,
                    slot=transfer.slot,
                    payer_wallet=transfer.payer_wallet,
                )
            except DuplicateSettlementError:
                logger.info("transfer_already_settled", signature=transfer.signature)
                return None
            except InvalidIntentStateError:
                # Confirmed by a concurrent delivery; try the next intent
                continue

        return None

    async def handle_webhook_event(self, event: HeliusWebhookEvent) -> int:
        """Process one Helius event. Returns the number of settlements made."""
        if event.webhook_type != "ACCOUNT_UPDATE":
            metrics.record_webhook_event("ignored")
            return 0

        settled = 0
        for transfer in transfers_from_event(event):
            if await self.process_transfer(transfer) is not None:
                settled += 1

        metrics.record_webhook_event("settled" if settled else "no_match")
        return settled

    # ========================================================================
    # Poll and verify
    # ========================================================================

    async def _mark_expired(self, intent: PaymentIntent) -> bool:
        result = await self.session.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.status == IntentStatus.PENDING.value,
            )
            .values(status=IntentStatus.EXPIRED.value, updated_at=func.now())
        )
        await self.session.commit()
        return result.rowcount > 0

    def _intent_mint(self, intent: PaymentIntent) -> str:
        mint = intent.token_mint or get_token_mint(
            TokenSymbol(intent.token_symbol), intent.cluster
        )
        if mint is None:
            raise UnsupportedTokenError(intent.token_symbol)
        return mint

    def _scan_address(self, intent: PaymentIntent) -> str:
        """SPL transfers are indexed under the receiving token account, not its owner."""
        if intent.token_symbol == TokenSymbol.SOL.value:
            return intent.deposit_wallet
        return associated_token_address(intent.deposit_wallet, self._intent_mint(intent))

    def _received_amount(self, transaction: dict, intent: PaymentIntent) -> int:
        if intent.token_symbol == TokenSymbol.SOL.value:
            return native_balance_delta(transaction, intent.deposit_wallet)
        return token_balance_delta(transaction, intent.deposit_wallet, self._intent_mint(intent))

    def _expected_amount(self, intent: PaymentIntent) -> int:
        if intent.token_symbol == TokenSymbol.SOL.value:
            return int(intent.amount_sol_lamports or 0)
        return token_amount_raw(
            float(intent.amount_token_ui or 0), TokenSymbol(intent.token_symbol)
        )

    def _ui_amount(self, amount_raw: int, intent: PaymentIntent) -> float:
        decimals = TOKEN_CONFIGS[TokenSymbol(intent.token_symbol)].decimals
        return amount_raw / 10**decimals

    async def _scan_recent_transfers(
        self, intent: PaymentIntent, solana: SolanaClient
    ) -> SettlementResult | None:
        expected = self._expected_amount(intent)

        if intent.token_symbol == TokenSymbol.SOL.value:
            balance = await solana.get_balance(intent.deposit_wallet)
            if balance < expected:
                return None

        signatures = await solana.get_signatures_for_address(
            self._scan_address(intent), limit=POLL_SIGNATURE_LIMIT
        )
        for signature in signatures:
            if await self._settlement_exists(signature):
                continue

            transaction = await solana.get_transaction(signature)
            if not transaction:
                continue

            received = self._received_amount(transaction, intent)
            if received <= 0 or not meets_expected(received, expected):
                continue

            try:
                return await self.settle(
                    intent,
                    signature,
                    amount_raw=received,
                    amount_ui=self._ui_amount(received, intent),
                    source="poll",
                    slot=transaction.get("slot"),
                    payer_wallet=fee_payer(transaction),
                )
            except DuplicateSettlementError:
                continue
        return None

    async def poll(
        self, user: AppUser, intent_id: str, solana: SolanaClient | None = None
    ) -> PollResponse:
        """Check the chain for a payment matching a pending intent."""
        intent = await self._get_user_intent(user.id, intent_id)

        if intent.status == IntentStatus.CONFIRMED.value:
            return PollResponse(status=intent.status, message="Payment already confirmed")
        if intent.status != IntentStatus.PENDING.value:
            return PollResponse(status=intent.status, message=f"Payment intent is {intent.status}")

        solana = solana or SolanaClient(cluster=intent.cluster)
        try:
            settlement = await self._scan_recent_transfers(intent, solana)
        except (SolanaRPCError, UnsupportedTokenError) as exc:
            logger.warning("payment_poll_check_failed", intent_id=intent_id, error=str(exc))
            settlement = None
        except InvalidIntentStateError:
            return PollResponse(
                status=IntentStatus.CONFIRMED.value, message="Payment already confirmed"
            )

        if settlement is not None:
            return PollResponse(
                status=IntentStatus.CONFIRMED.value,
                signature=settlement.signature,
                message="Payment confirmed",
            )

        if intent.expires_at is not None and intent.expires_at <= _utc_now():
            if await self._mark_expired(intent):
                logger.info("payment_intent_expired", intent_id=intent_id)
                return PollResponse(
                    status=IntentStatus.EXPIRED.value,
                    message=f"Payment intent is {IntentStatus.EXPIRED.value}",
                )

        return PollResponse(
            status=IntentStatus.PENDING.value,
            message="Payment not yet detected. Please wait a few moments and try again.",
        )

    async def verify(
        self,
        user: AppUser,
        intent_id: str,
        signature: str,
        solana: SolanaClient | None = None,
    ) -> VerifyResponse:
        """
        Verify a client-supplied signature against a pending intent.

        Raises:
            IntentNotFoundError / InvalidIntentStateError: Unknown or processed intent
            DuplicateSettlementError: Signature already settled
            TransactionNotFoundError: RPC has no such transaction
            InsufficientPaymentError: Transfer below the expected amount
        """
        intent = await self._get_user_intent(user.id, intent_id)
        if intent.status != IntentStatus.PENDING.value:
            raise InvalidIntentStateError(intent.id, intent.status)

        if await self._settlement_exists(signature):
            raise DuplicateSettlementError(signature)

        solana = solana or SolanaClient(cluster=intent.cluster)
        transaction = await solana.get_transaction(signature)
        if not transaction:
            raise TransactionNotFoundError(signature)

        received = self._received_amount(transaction, intent)
        expected = self._expected_amount(intent)
        if not meets_expected(received, expected):
            raise InsufficientPaymentError(expected=expected, received=received)

        settlement = await self.settle(
            intent,
            signature,
            amount_raw=received,
            amount_ui=self._ui_amount(received, intent),
            source="verify",
            slot=transaction.get("slot"),
            payer_wallet=fee_payer(transaction),
        )
        return VerifyResponse(
            success=True,
            settlement=SettlementInfo(
                signature=settlement.signature,
                amount_ui=settlement.amount_ui,
                token_symbol=settlement.token_symbol,
            ),
        )

    # ========================================================================
    # Balance
    # ========================================================================

    async def _record_discount(self, user: AppUser, discount) -> None:
        try:
            await record_token_balance(self.session, user.id, discount)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.warning("token_balance_record_failed", user_id=str(user.id), error=str(exc))

    async def get_balance(self, user: AppUser) -> BalanceResponse:
        """Credits, free project allowance, and next project price for a user."""
        deposit_wallet: str | None
        try:
            deposit_wallet, _created = await self.ensure_deposit_wallet(user)
        except (DatabaseError, EncryptionError) as exc:
            # Balance still renders without a deposit wallet
            logger.error("balance_deposit_wallet_failed", user_id=str(user.id), error=str(exc))
            deposit_wallet = None

        result = await self.session.execute(
            select(UserCredits.credits).where(UserCredits.user_id == user.id)
        )
        credits = result.scalar_one_or_none() or 0

        project_count = await self._count_projects(user.id)
        discount = await check_blockmind_discount(user.wallet_address)
        if user.wallet_address:
            await self._record_discount(user, discount)

        cents = (
            settings.discounted_project_price_usd_cents
            if discount.eligible
            else settings.project_price_usd_cents
        )
        return BalanceResponse(
            credits=credits,
            project_count=project_count,
            has_free_project=project_count >= settings.free_project_limit,
            can_create_free_project=project_count < settings.free_project_limit,
            next_project_price=NextProjectPrice(usd=cents / 100, has_discount=discount.eligible),
            blockmind_token=BlockmindTokenInfo(
                balance=discount.balance,
                sol_equivalent=discount.sol_equivalent,
                eligible=discount.eligible,
            ),
            deposit_wallet=deposit_wallet,
        )
