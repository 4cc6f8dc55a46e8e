"""
Pricing - token table, SOL/USD price feed, holder discount, and conversions.
"""

import asyncio
import math
import time
from decimal import Decimal

import httpx
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import UserTokenBalance
from app.exceptions import PriceFeedError, UnsupportedTokenError
from app.models.api import TokenSymbol
from app.models.domain import LAMPORTS_PER_SOL, DiscountCheck, ProjectPrice, TokenConfig
from app.services.solana_client import SolanaClient, associated_token_address

logger = get_logger(__name__)

USDC_DEVNET_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"

TOKEN_CONFIGS: dict[TokenSymbol, TokenConfig] = {
    TokenSymbol.SOL: TokenConfig(TokenSymbol.SOL, 9, None, None),
    TokenSymbol.USDC: TokenConfig(
        TokenSymbol.USDC,
        6,
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        USDC_DEVNET_MINT,
    ),
    TokenSymbol.USDT: TokenConfig(
        TokenSymbol.USDT,
        6,
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
        # No canonical devnet USDT
        USDC_DEVNET_MINT,
    ),
    # Mint comes from configuration
    TokenSymbol.BLOCKMIND: TokenConfig(TokenSymbol.BLOCKMIND, 9, None, None),
}

SOLANA_PAY_LABEL = "Blockmind+Project+Payment"


def parse_token_symbol(symbol: str) -> TokenSymbol:
    try:
        return TokenSymbol(symbol.upper())
    except ValueError as exc:
        raise UnsupportedTokenError(symbol) from exc


def get_token_mint(symbol: TokenSymbol, cluster: str | None = None) -> str | None:
    """Mint address for a token on a cluster. None for native SOL."""
    cluster = cluster or settings.SOLANA_CLUSTER
    if symbol is TokenSymbol.SOL:
        return None
    if symbol is TokenSymbol.BLOCKMIND:
        mint = (
            settings.BLOCKMIND_TOKEN_MINT_DEVNET
            if cluster == "devnet"
            else settings.BLOCKMIND_TOKEN_MINT
        )
        return mint or None
    config = TOKEN_CONFIGS[symbol]
    return config.devnet_mint if cluster == "devnet" else config.mainnet_mint


# ============================================================================
# SOL/USD price feed
# ============================================================================


class SolPriceFeed:
    """
    Cached SOL/USD price.

    Refreshes from the exchange ticker at most once per TTL. On failure it
    serves the last known price, then the configured fallback.
    """

    def __init__(
        self,
        url: str | None = None,
        ttl_seconds: int | None = None,
        fallback_price: float | None = None,
    ) -> None:
        self.url = url or settings.sol_price_feed_url
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.sol_price_cache_seconds
        self.fallback_price = fallback_price if fallback_price is not None else settings.SOL_PRICE_USD
        self._price: float | None = None
        self._fetched_at: float = 0.0
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._price is not None and time.monotonic() - self._fetched_at < self.ttl_seconds

    async def _fetch(self) -> float:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                price = float(response.json()["price"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise PriceFeedError(str(exc)) from exc
        if price <= 0:
            raise PriceFeedError(f"non-positive price {price}")
        return price

    async def get_price(self) -> float:
        if self._is_fresh():
            return self._price  # type: ignore[return-value]

        async with self._lock:
            if self._is_fresh():
                return self._price  # type: ignore[return-value]
            try:
                self._price = await self._fetch()
                self._fetched_at = time.monotonic()
                logger.debug("sol_price_refreshed", price_usd=self._price)
            except PriceFeedError as exc:
                logger.warning(
                    "sol_price_fetch_failed",
                    error=str(exc),
                    using_cached=self._price is not None,
                )
                if self._price is None:
                    return self.fallback_price
            return self._price

    def reset(self) -> None:
        self._price = None
        self._fetched_at = 0.0


sol_price_feed = SolPriceFeed()


async def get_sol_price_usd() -> float:
    return await sol_price_feed.get_price()


# ============================================================================
# Conversions
# ============================================================================


def usd_to_lamports(amount_usd: float, sol_price_usd: float) -> int:
    return math.ceil(amount_usd / sol_price_usd * LAMPORTS_PER_SOL)


def convert_sol_to_token(amount_sol: float, symbol: TokenSymbol, sol_price_usd: float) -> float:
    """Token UI amount worth a SOL amount. Stablecoins track USD."""
    if symbol in (TokenSymbol.USDC, TokenSymbol.USDT):
        return amount_sol * sol_price_usd
    if symbol is TokenSymbol.BLOCKMIND:
        return amount_sol / settings.BLOCKMIND_PRICE_SOL
    return amount_sol


def convert_token_to_sol(amount: float, symbol: TokenSymbol, sol_price_usd: float) -> float:
    if symbol in (TokenSymbol.USDC, TokenSymbol.USDT):
        return amount / sol_price_usd
    if symbol is TokenSymbol.BLOCKMIND:
        return amount * settings.BLOCKMIND_PRICE_SOL
    return amount


def token_amount_raw(amount_ui: float, symbol: TokenSymbol) -> int:
    """UI amount in the token's smallest unit, rounded up."""
    return math.ceil(amount_ui * 10 ** TOKEN_CONFIGS[symbol].decimals)


def build_solana_pay_url(
    deposit_wallet: str,
    symbol: TokenSymbol,
    amount_sol: float,
    amount_token: float,
    token_mint: str | None,
) -> str:
    if symbol is TokenSymbol.SOL:
        return f"solana:{deposit_wallet}?amount={amount_sol}&label={SOLANA_PAY_LABEL}"
    return (
        f"solana:{deposit_wallet}?amount={amount_token}"
        f"&token={token_mint}&label={SOLANA_PAY_LABEL}"
    )


# ============================================================================
# Holder discount
# ============================================================================


async def check_blockmind_discount(
    wallet_address: str | None,
    solana: SolanaClient | None = None,
) -> DiscountCheck:
    """
    Check whether a wallet holds enough BLOCKMIND for the project discount.

    Any failure (no wallet, no mint configured, no token account, RPC error)
    means no discount.
    """
    no_discount = DiscountCheck(eligible=False, balance=0.0, sol_equivalent=0.0)
    mint = get_token_mint(TokenSymbol.BLOCKMIND)
    if not wallet_address or not mint:
        return no_discount

    solana = solana or SolanaClient()
    try:
        balance = await solana.get_token_account_balance(
            associated_token_address(wallet_address, mint)
        )
    except Exception as exc:
        # Missing token account surfaces as an RPC error
        logger.debug("blockmind_balance_unavailable", wallet=wallet_address, error=str(exc))
        return no_discount

    sol_equivalent = balance * settings.BLOCKMIND_PRICE_SOL
    return DiscountCheck(
        eligible=sol_equivalent >= settings.blockmind_discount_threshold_sol,
        balance=balance,
        sol_equivalent=sol_equivalent,
    )


async def record_token_balance(db: AsyncSession, user_id, check: DiscountCheck) -> None:
    """Upsert the last observed BLOCKMIND balance for a user."""
    mint = get_token_mint(TokenSymbol.BLOCKMIND)
    if not mint:
        return
    stmt = insert(UserTokenBalance).values(
        user_id=user_id,
        token_mint=mint,
        balance_ui=Decimal(str(check.balance)),
        balance_sol_equivalent=Decimal(str(check.sol_equivalent)),
    )
    stmt = stmt.on_conflict_do_update(
        constraint="uq_user_token_balance",
        set_={
            "balance_ui": stmt.excluded.balance_ui,
            "balance_sol_equivalent": stmt.excluded.balance_sol_equivalent,
            "last_checked_at": func.now(),
            "updated_at": func.now(),
        },
    )
    await db.execute(stmt)


async def get_project_price(
    wallet_address: str | None,
    solana: SolanaClient | None = None,
) -> tuple[ProjectPrice, DiscountCheck]:
    """Price of the next paid project for a holder of wallet_address."""
    discount = await check_blockmind_discount(wallet_address, solana)
    cents = (
        settings.discounted_project_price_usd_cents
        if discount.eligible
        else settings.project_price_usd_cents
    )
    sol_price = await get_sol_price_usd()
    price = ProjectPrice(
        amount_usd_cents=cents,
        amount_sol_lamports=usd_to_lamports(cents / 100, sol_price),
        has_discount=discount.eligible,
        sol_price_usd=sol_price,
    )
    return price, discount
