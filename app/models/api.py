"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.

Wire format is camelCase. Request fields the handlers validate themselves
(to answer with a specific 400 message) are optional here.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TokenSymbol(str, Enum):
    """Tokens accepted for payment."""

    SOL = "SOL"
    USDC = "USDC"
    USDT = "USDT"
    BLOCKMIND = "BLOCKMIND"


class IntentStatus(str, Enum):
    """Payment intent lifecycle."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Auth Models
# ============================================================================


class PrivyAuthRequest(CamelModel):
    """POST /api/auth/privy request body."""

    token: str | None = None


class AuthUser(CamelModel):
    id: str
    email: str | None = None
    wallet_address: str | None = None
    sandbox_id: str | None = None


class PrivyAuthResponse(CamelModel):
    user: AuthUser


# ============================================================================
# Payment Models
# ============================================================================


class CreateIntentRequest(CamelModel):
    """POST /api/payments/create-intent request body."""

    project_id: str | None = None
    token_symbol: str = "SOL"
    credits_to_purchase: int = Field(default=0, ge=0)

    @field_validator("token_symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()


class IntentInfo(CamelModel):
    id: str
    deposit_wallet: str
    amount_usd: float
    amount_sol: float
    amount_token: float
    token_symbol: str
    token_mint: str | None
    has_discount: bool
    expires_at: str
    solana_pay_url: str


class CreateIntentResponse(CamelModel):
    """Either a free-project notice or a new intent."""

    free_project: bool | None = None
    message: str | None = None
    intent: IntentInfo | None = None


class PollRequest(CamelModel):
    intent_id: str | None = None


class PollResponse(CamelModel):
    status: str
    message: str
    signature: str | None = None


class VerifyRequest(CamelModel):
    intent_id: str | None = None
    signature: str | None = None


class SettlementInfo(CamelModel):
    signature: str
    amount_ui: float
    token_symbol: str


class VerifyResponse(CamelModel):
    success: bool
    settlement: SettlementInfo


class NextProjectPrice(CamelModel):
    usd: float
    has_discount: bool


class BlockmindTokenInfo(CamelModel):
    balance: float
    sol_equivalent: float
    eligible: bool


class BalanceResponse(CamelModel):
    """GET /api/payments/balance response."""

    credits: int
    project_count: int
    has_free_project: bool
    can_create_free_project: bool
    next_project_price: NextProjectPrice
    blockmind_token: BlockmindTokenInfo
    deposit_wallet: str | None


class DepositWalletResponse(CamelModel):
    deposit_wallet: str
    message: str


class ImportKeyRequest(CamelModel):
    private_key: str | list[int] | None = None


class ImportDepositWalletResponse(CamelModel):
    success: bool
    deposit_wallet: str
    message: str


class HeliusNativeTransfer(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    account: str | None = None
    to_user_account: str | None = None
    amount: int = 0

    @property
    def destination(self) -> str | None:
        return self.account or self.to_user_account


class HeliusTokenTransfer(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    account: str | None = None
    to_user_account: str | None = None
    token_amount: float = 0.0
    mint: str | None = None

    @property
    def destination(self) -> str | None:
        return self.account or self.to_user_account


class WebhookAckResponse(CamelModel):
    """Helius webhook acknowledgement. Always sent with 200."""

    received: bool = True
    processed: bool | None = None
    settled: int | None = None
    failed: int | None = None
    error: str | None = None


class HeliusWebhookEvent(CamelModel):
    """A single Helius webhook notification."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    webhook_type: str | None = None
    signature: str | None = None
    slot: int | None = None
    native_transfers: list[HeliusNativeTransfer] = Field(default_factory=list)
    token_transfers: list[HeliusTokenTransfer] = Field(default_factory=list)


# ============================================================================
# Wallet Models
# ============================================================================


class PrivateKeyExport(CamelModel):
    base58: str
    array: list[int]


class WalletImportResponse(CamelModel):
    success: bool
    wallet_address: str
    message: str


class WalletExportResponse(CamelModel):
    wallet_address: str
    private_key: PrivateKeyExport


class AdminPrivateKeyResponse(CamelModel):
    success: bool = True
    public_key: str
    private_key: PrivateKeyExport
    user_id: str
    retrieved_at: str


class AdminPrivateKeyRequest(CamelModel):
    public_key: str | None = None


class SyncWebhookResponse(CamelModel):
    success: bool
    message: str
    count: int


class FixedProject(CamelModel):
    id: str
    name: str
    sandbox_id: str
    user_id: str


class FixProjectsRequest(CamelModel):
    privy_user_id: str | None = None


class FixProjectsResponse(CamelModel):
    message: str
    fixed: int
    projects: list[FixedProject]


# ============================================================================
# Project Models
# ============================================================================


class ProjectOut(CamelModel):
    """Client view of a project. id is the sandbox id."""

    id: str
    name: str
    prompt: str
    preview_url: str | None = None
    sandbox_id: str | None = None
    project_path: str | None = None
    dev_port: int | None = None
    status: str | None = None
    created_at: int
    updated_at: int


class ProjectListResponse(CamelModel):
    projects: list[ProjectOut]


class ProjectResponse(CamelModel):
    project: ProjectOut | None


class ProjectCreateRequest(CamelModel):
    id: str | None = None
    name: str | None = None
    prompt: str | None = None
    preview_url: str | None = None


class ProjectUpdateRequest(CamelModel):
    """Only fields present in the body are applied."""

    name: str | None = None
    prompt: str | None = None
    preview_url: str | None = None


class AllocateRequest(CamelModel):
    sandbox_id: str | None = None


class AllocateResponse(CamelModel):
    project_path: str | None
    dev_port: int | None


class SuccessResponse(CamelModel):
    success: bool = True


# ============================================================================
# Message Models
# ============================================================================


class MessagePayload(CamelModel):
    """A chat transcript entry as sent by the client."""

    type: str | None = None
    content: str | None = None
    name: str | None = None
    input: Any | None = None
    result: Any | None = None
    message: str | None = None
    preview_url: str | None = None
    sandbox_id: str | None = None
    image_url: str | None = None
    image_prompt: str | None = None
    sequence_number: int | None = None


class SaveMessageRequest(CamelModel):
    message: MessagePayload | None = None
    sequence_number: int | None = None


class MessageListResponse(CamelModel):
    messages: list[MessagePayload]


class SavedMessage(CamelModel):
    id: str
    sequence_number: int


class SaveMessageResponse(CamelModel):
    success: bool
    message: SavedMessage


# ============================================================================
# Portfolio Models
# ============================================================================


class PortfolioUser(CamelModel):
    id: str
    email: str | None = None
    wallet_address: str | None = None
    wallet_provider: str | None = None
    sandbox_id: str | None = None


class PortfolioSandbox(CamelModel):
    sandbox_id: str
    capacity: int
    active_users: int


class PortfolioResponse(CamelModel):
    user: PortfolioUser
    sandbox: PortfolioSandbox | None
    projects: list[ProjectOut]


# ============================================================================
# Sandbox Tool Models
# ============================================================================


class SandboxStartRequest(CamelModel):
    sandbox_id: str | None = None


class SandboxStartResponse(CamelModel):
    success: bool
    message: str
    sandbox_id: str


class ViewFileRequest(CamelModel):
    sandbox_id: str | None = None
    file_path: str | None = None
    project_path: str | None = None


class ViewFileResponse(CamelModel):
    content: str
    path: str
    stats: str  # `ls -lh` line for the file


class SaveFileRequest(CamelModel):
    sandbox_id: str | None = None
    file_path: str | None = None
    content: str | None = None
    project_path: str | None = None


class SaveFileResponse(CamelModel):
    ok: bool
    path: str


class SearchRequest(CamelModel):
    sandbox_id: str | None = None
    query: str | None = None
    max_results: int = Field(default=100, ge=1, le=1000)
    project_path: str | None = None


class SearchHit(CamelModel):
    file: str
    line: int
    preview: str


class SearchResponse(CamelModel):
    results: list[SearchHit]


class ExploreRequest(CamelModel):
    sandbox_id: str | None = None
    project_path: str | None = None


class FileNode(CamelModel):
    name: str
    path: str
    type: str  # file or directory
    children: list["FileNode"] | None = None


class RouteInfo(CamelModel):
    path: str
    file_path: str
    type: str  # page or api


class ExploreResponse(CamelModel):
    tree: list[FileNode]
    routes: list[RouteInfo]
    app_dir: str


class LogsRequest(CamelModel):
    sandbox_id: str | None = None
    project_path: str = "website-project"
    lines: int = Field(default=50, ge=1, le=2000)


class LogsResponse(CamelModel):
    logs: str
    process_info: str
    has_dev_server: bool


class PreviewUrlRequest(CamelModel):
    sandbox_id: str | None = None
    port: int | None = None


class PreviewUrlResponse(CamelModel):
    preview_url: str
    token: str | None = None
    server_status: str
    server_error: str | None = None


class RestartServerRequest(CamelModel):
    sandbox_id: str | None = None
    project_path: str | None = None
    dev_port: int | None = Field(default=None, ge=1, le=65535)


class RestartServerResponse(CamelModel):
    """
    Outcome of a dev server restart.

    server_status is the HTTP code seen from inside the sandbox, "starting"
    when the process is up but not answering yet, or "failed".
    """

    success: bool
    preview_url: str
    preview_token: str | None = None
    server_status: str
    process_running: bool
    logs: str
    port_conflict: bool = False
    build_error: bool = False
    build_errors: list[str] = Field(default_factory=list)
    error_context: str | None = None


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
