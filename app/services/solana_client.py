"""
Solana JSON-RPC Client - async httpx client for balance and transaction lookups.

Only the handful of read methods payment detection needs. Commitment is
always `confirmed`.
"""

from typing import Any

import httpx
from solders.pubkey import Pubkey
from structlog import get_logger

from app.config import settings
from app.exceptions import SolanaRPCError
from app.observability.metrics import track_rpc_call

logger = get_logger(__name__)

COMMITMENT = "confirmed"

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")


def associated_token_address(owner: str, mint: str) -> str:
    """Derive the associated token account for an owner and mint."""
    address, _bump = Pubkey.find_program_address(
        [
            bytes(Pubkey.from_string(owner)),
            bytes(TOKEN_PROGRAM_ID),
            bytes(Pubkey.from_string(mint)),
        ],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return str(address)


def rpc_url_for_cluster(cluster: str) -> str:
    if cluster == "devnet":
        return settings.SOLANA_DEVNET_RPC
    return settings.SOLANA_MAINNET_RPC


class SolanaClient:
    """
    Minimal async Solana RPC client.

    Raises SolanaRPCError for transport failures and JSON-RPC error objects.
    """

    def __init__(
        self,
        cluster: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.cluster = cluster or settings.SOLANA_CLUSTER
        self.rpc_url = rpc_url_for_cluster(self.cluster)
        self._client = http_client
        self._request_id = 0

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        try:
            with track_rpc_call(method):
                if self._client is not None:
                    response = await self._client.post(self.rpc_url, json=payload)
                else:
                    async with httpx.AsyncClient(timeout=settings.solana_rpc_timeout) as client:
                        response = await client.post(self.rpc_url, json=payload)
                response.raise_for_status()
                body = response.json()
                if not isinstance(body, dict):
                    raise SolanaRPCError(method, "unexpected response shape")
                if body.get("error"):
                    error = body["error"]
                    message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                    raise SolanaRPCError(method, message)
        except httpx.TimeoutException as exc:
            logger.warning("solana_rpc_timeout", method=method, cluster=self.cluster)
            raise SolanaRPCError(method, "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("solana_rpc_http_error", method=method, error=str(exc))
            raise SolanaRPCError(method, str(exc)) from exc
        except ValueError as exc:
            logger.warning("solana_rpc_invalid_body", method=method, error=str(exc))
            raise SolanaRPCError(method, "response was not valid JSON") from exc

        return body.get("result")

    async def get_balance(self, address: str) -> int:
        """Balance in lamports."""
        result = await self._call("getBalance", [address, {"commitment": COMMITMENT}])
        return int(result["value"])

    async def get_signatures_for_address(self, address: str, limit: int = 10) -> list[str]:
        """Most recent transaction signatures touching an address, newest first."""
        result = await self._call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": COMMITMENT}],
        )
        return [entry["signature"] for entry in result or [] if entry.get("signature")]

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Parsed transaction, or None when the RPC has no record of it."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "commitment": COMMITMENT,
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_token_account_balance(self, token_account: str) -> float:
        """UI amount held by an SPL token account."""
        result = await self._call(
            "getTokenAccountBalance", [token_account, {"commitment": COMMITMENT}]
        )
        ui_amount = result["value"].get("uiAmount")
        if ui_amount is None:
            ui_amount = float(result["value"].get("uiAmountString") or 0)
        return float(ui_amount)


# ============================================================================
# Transaction inspection
# ============================================================================


def account_keys(transaction: dict[str, Any]) -> list[str]:
    """Static account keys plus loaded lookup-table addresses, in index order."""
    message = transaction.get("transaction", {}).get("message", {})
    keys: list[str] = []
    for key in message.get("accountKeys", []):
        keys.append(key["pubkey"] if isinstance(key, dict) else key)
    loaded = (transaction.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


def native_balance_delta(transaction: dict[str, Any], address: str) -> int:
    """Lamports gained by an address in a transaction (0 when absent or negative)."""
    keys = account_keys(transaction)
    if address not in keys:
        return 0
    index = keys.index(address)
    meta = transaction.get("meta") or {}
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    if index >= len(pre) or index >= len(post):
        return 0
    return max(0, int(post[index]) - int(pre[index]))


def token_balance_delta(transaction: dict[str, Any], owner: str, mint: str) -> int:
    """Raw SPL token units gained by an owner for a mint."""
    meta = transaction.get("meta") or {}

    def _total(entries: list[dict[str, Any]] | None) -> int:
        total = 0
        for entry in entries or []:
            if entry.get("owner") == owner and entry.get("mint") == mint:
                total += int(entry.get("uiTokenAmount", {}).get("amount", 0))
        return total

    return max(0, _total(meta.get("postTokenBalances")) - _total(meta.get("preTokenBalances")))


def fee_payer(transaction: dict[str, Any]) -> str | None:
    keys = account_keys(transaction)
    return keys[0] if keys else None
