"""
Tests for the Helius webhook client.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from app.exceptions import WebhookConfigError
from app.services.helius_webhook import HeliusClient
from tests.conftest import make_result

WEBHOOK = {
    "webhookURL": "https://api.example.com/api/payments/webhook",
    "transactionTypes": ["ANY"],
    "accountAddresses": ["Existing1111"],
    "webhookType": "enhanced",
    "encoding": "jsonParsed",
}


class FakeHelius:
    """Records requests and answers like the webhooks endpoint."""

    def __init__(self, get_status: int = 200, put_status: int = 200) -> None:
        self.get_status = get_status
        self.put_status = put_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(self.get_status, json=WEBHOOK)
        return httpx.Response(self.put_status, json={})

    @property
    def put_body(self) -> dict:
        puts = [r for r in self.requests if r.method == "PUT"]
        return json.loads(puts[-1].content)


def make_client(handler: FakeHelius, **overrides) -> HeliusClient:
    options = {
        "api_key": "helius-key",
        "webhook_id": "wh-1",
        "webhook_url": "https://api.example.com/api/payments/webhook",
    }
    options.update(overrides)
    return HeliusClient(
        **options, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


class TestGetWebhook:
    @pytest.mark.asyncio
    async def test_reads_config(self):
        handler = FakeHelius()
        config = await make_client(handler).get_webhook()

        assert config.account_addresses == ["Existing1111"]
        assert config.transaction_types == ["ANY"]
        request = handler.requests[0]
        assert request.url.path.endswith("/webhooks/wh-1")
        assert request.headers["Authorization"] == "Bearer helius-key"

    @pytest.mark.asyncio
    async def test_http_error_is_none(self):
        assert await make_client(FakeHelius(get_status=500)).get_webhook() is None


class TestUpdateAddresses:
    """Tests for merging deposit wallets into the webhook."""

    @pytest.mark.asyncio
    async def test_merges_and_preserves_settings(self):
        handler = FakeHelius()

        assert await make_client(handler).update_webhook_addresses(["New1111", "Existing1111"])

        body = handler.put_body
        assert body["accountAddresses"] == ["Existing1111", "New1111"]
        assert body["transactionTypes"] == ["ANY"]
        assert body["webhookType"] == "enhanced"

    @pytest.mark.asyncio
    async def test_missing_config_is_false(self):
        handler = FakeHelius()
        assert await make_client(handler, webhook_id="").add_wallet("New1111") is False
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_put_failure_is_false(self):
        assert await make_client(FakeHelius(put_status=400)).add_wallet("New1111") is False


class TestSync:
    @pytest.mark.asyncio
    async def test_syncs_every_deposit_wallet(self, db_session):
        handler = FakeHelius()
        db_session.execute = AsyncMock(return_value=make_result(scalars=["A111", "B222"]))

        success, count = await make_client(handler).sync_all_deposit_wallets(db_session)

        assert (success, count) == (True, 2)
        assert handler.put_body["accountAddresses"] == ["Existing1111", "A111", "B222"]

    @pytest.mark.asyncio
    async def test_nothing_to_sync(self, db_session):
        handler = FakeHelius()
        assert await make_client(handler).sync_all_deposit_wallets(db_session) == (True, 0)
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_unconfigured_names_missing_setting(self, db_session):
        handler = FakeHelius()
        client = make_client(handler, webhook_id="")

        with pytest.raises(WebhookConfigError) as exc_info:
            await client.sync_all_deposit_wallets(db_session)

        assert exc_info.value.missing == "HELIUS_WEBHOOK_ID"
        db_session.execute.assert_not_awaited()
        assert handler.requests == []
