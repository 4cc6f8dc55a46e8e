"""
Tests for token configuration, price feed caching and conversions.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from hypothesis import given
from hypothesis import strategies as st

from app.exceptions import PriceFeedError, UnsupportedTokenError
from app.models.api import TokenSymbol
from app.models.domain import LAMPORTS_PER_SOL, DiscountCheck
from app.services import pricing
from app.services.pricing import (
    SolPriceFeed,
    build_solana_pay_url,
    check_blockmind_discount,
    convert_sol_to_token,
    convert_token_to_sol,
    get_project_price,
    get_token_mint,
    parse_token_symbol,
    token_amount_raw,
    usd_to_lamports,
)

OWNER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class TestTokenTable:
    """Tests for token lookup."""

    def test_parse_is_case_insensitive(self):
        assert parse_token_symbol("usdc") is TokenSymbol.USDC

    def test_parse_unknown_raises(self):
        with pytest.raises(UnsupportedTokenError):
            parse_token_symbol("DOGE")

    def test_sol_has_no_mint(self):
        assert get_token_mint(TokenSymbol.SOL, "mainnet-beta") is None

    def test_usdc_mainnet_mint(self):
        assert get_token_mint(TokenSymbol.USDC, "mainnet-beta") == MINT

    def test_usdc_devnet_mint(self):
        assert get_token_mint(TokenSymbol.USDC, "devnet") == pricing.USDC_DEVNET_MINT

    def test_blockmind_mint_from_settings(self):
        with patch.object(pricing.settings, "BLOCKMIND_TOKEN_MINT", "BmMint"):
            assert get_token_mint(TokenSymbol.BLOCKMIND, "mainnet-beta") == "BmMint"

    def test_blockmind_without_mint_is_none(self):
        with patch.object(pricing.settings, "BLOCKMIND_TOKEN_MINT_DEVNET", ""):
            assert get_token_mint(TokenSymbol.BLOCKMIND, "devnet") is None


class TestConversions:
    """Tests for USD, SOL and token conversions."""

    def test_usd_to_lamports(self):
        assert usd_to_lamports(15.0, 150.0) == 100_000_000

    def test_usd_to_lamports_rounds_up(self):
        assert usd_to_lamports(10.0, 3.0) == 3_333_333_334

    def test_stablecoins_track_usd(self):
        assert convert_sol_to_token(0.1, TokenSymbol.USDC, 150.0) == pytest.approx(15.0)
        assert convert_token_to_sol(15.0, TokenSymbol.USDT, 150.0) == pytest.approx(0.1)

    def test_blockmind_uses_fixed_price(self):
        with patch.object(pricing.settings, "BLOCKMIND_PRICE_SOL", 0.001):
            assert convert_sol_to_token(0.1, TokenSymbol.BLOCKMIND, 150.0) == pytest.approx(100)
            assert convert_token_to_sol(100, TokenSymbol.BLOCKMIND, 150.0) == pytest.approx(0.1)

    def test_sol_is_identity(self):
        assert convert_sol_to_token(0.5, TokenSymbol.SOL, 150.0) == 0.5

    def test_token_amount_raw(self):
        assert token_amount_raw(15.0, TokenSymbol.USDC) == 15_000_000
        assert token_amount_raw(0.1, TokenSymbol.SOL) == 100_000_000

    @given(
        usd=st.floats(min_value=0.01, max_value=10_000, allow_nan=False),
        price=st.floats(min_value=0.5, max_value=10_000, allow_nan=False),
    )
    def test_lamports_never_undercharge(self, usd, price):
        lamports = usd_to_lamports(usd, price)
        assert lamports / LAMPORTS_PER_SOL * price >= usd * (1 - 1e-12)


class TestSolanaPayUrl:
    def test_native_url(self):
        url = build_solana_pay_url("Dep", TokenSymbol.SOL, 0.1, 0.1, None)
        assert url == "solana:Dep?amount=0.1&label=Blockmind+Project+Payment"

    def test_token_url_includes_mint(self):
        url = build_solana_pay_url("Dep", TokenSymbol.USDC, 0.1, 15.0, MINT)
        assert url == f"solana:Dep?amount=15.0&token={MINT}&label=Blockmind+Project+Payment"


class TestSolPriceFeed:
    """Tests for price caching and fallback."""

    @pytest.mark.asyncio
    async def test_caches_within_ttl(self):
        feed = SolPriceFeed(url="http://price", ttl_seconds=60, fallback_price=100.0)
        with patch.object(feed, "_fetch", AsyncMock(return_value=160.0)) as fetch:
            assert await feed.get_price() == 160.0
            assert await feed.get_price() == 160.0
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_falls_back_when_never_fetched(self):
        feed = SolPriceFeed(url="http://price", ttl_seconds=60, fallback_price=100.0)
        with patch.object(feed, "_fetch", AsyncMock(side_effect=PriceFeedError("down"))):
            assert await feed.get_price() == 100.0

    @pytest.mark.asyncio
    async def test_serves_stale_price_on_failure(self):
        feed = SolPriceFeed(url="http://price", ttl_seconds=0, fallback_price=100.0)
        with patch.object(feed, "_fetch", AsyncMock(return_value=170.0)):
            await feed.get_price()
        with patch.object(feed, "_fetch", AsyncMock(side_effect=PriceFeedError("down"))):
            assert await feed.get_price() == 170.0

    @pytest.mark.asyncio
    async def test_fetch_parses_ticker(self):
        feed = SolPriceFeed(url="http://price", ttl_seconds=60, fallback_price=100.0)
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"symbol": "SOLUSDT", "price": "142.5"})
        )
        real_client = httpx.AsyncClient

        def client_factory(*args, **kwargs):
            return real_client(transport=transport)

        with patch("app.services.pricing.httpx.AsyncClient", side_effect=client_factory):
            assert await feed._fetch() == 142.5

    @pytest.mark.asyncio
    async def test_fetch_rejects_zero_price(self):
        feed = SolPriceFeed(url="http://price", ttl_seconds=60, fallback_price=100.0)
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"price": "0"}))
        real_client = httpx.AsyncClient

        with patch(
            "app.services.pricing.httpx.AsyncClient",
            side_effect=lambda *a, **k: real_client(transport=transport),
        ):
            with pytest.raises(PriceFeedError):
                await feed._fetch()


class TestDiscount:
    """Tests for the BLOCKMIND holder discount."""

    @pytest.mark.asyncio
    async def test_no_wallet_means_no_discount(self):
        check = await check_blockmind_discount(None)
        assert check.eligible is False

    @pytest.mark.asyncio
    async def test_holder_over_threshold_is_eligible(self):
        solana = AsyncMock()
        solana.get_token_account_balance = AsyncMock(return_value=2000.0)
        with (
            patch.object(pricing.settings, "BLOCKMIND_TOKEN_MINT_DEVNET", MINT),
            patch.object(pricing.settings, "BLOCKMIND_TOKEN_MINT", MINT),
            patch.object(pricing.settings, "BLOCKMIND_PRICE_SOL", 0.001),
            patch.object(pricing.settings, "blockmind_discount_threshold_sol", 1.0),
        ):
            check = await check_blockmind_discount(OWNER, solana)
        assert check.eligible is True
        assert check.sol_equivalent == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_rpc_failure_means_no_discount(self):
        solana = AsyncMock()
        solana.get_token_account_balance = AsyncMock(side_effect=RuntimeError("no account"))
        with (
            patch.object(pricing.settings, "BLOCKMIND_TOKEN_MINT_DEVNET", MINT),
            patch.object(pricing.settings, "BLOCKMIND_TOKEN_MINT", MINT),
        ):
            check = await check_blockmind_discount(OWNER, solana)
        assert check.eligible is False
        assert check.balance == 0.0


class TestProjectPrice:
    @pytest.mark.asyncio
    async def test_discounted_price(self):
        discount = DiscountCheck(eligible=True, balance=5000, sol_equivalent=5)
        with (
            patch("app.services.pricing.check_blockmind_discount", AsyncMock(return_value=discount)),
            patch("app.services.pricing.get_sol_price_usd", AsyncMock(return_value=100.0)),
            patch.object(pricing.settings, "discounted_project_price_usd_cents", 1000),
        ):
            price, returned = await get_project_price(OWNER)
        assert price.amount_usd_cents == 1000
        assert price.amount_sol_lamports == 100_000_000
        assert price.has_discount is True
        assert returned is discount

    @pytest.mark.asyncio
    async def test_full_price(self):
        discount = DiscountCheck(eligible=False, balance=0, sol_equivalent=0)
        with (
            patch("app.services.pricing.check_blockmind_discount", AsyncMock(return_value=discount)),
            patch("app.services.pricing.get_sol_price_usd", AsyncMock(return_value=150.0)),
            patch.object(pricing.settings, "project_price_usd_cents", 1500),
        ):
            price, _ = await get_project_price(None)
        assert price.amount_usd_cents == 1500
        assert price.amount_sol == pytest.approx(0.1)
