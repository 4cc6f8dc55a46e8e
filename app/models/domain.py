"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from uuid import UUID

from app.models.api import TokenSymbol

LAMPORTS_PER_SOL = 1_000_000_000


@dataclass(frozen=True)
class PrivyVerification:
    """Outcome of verifying a Privy access token."""

    valid: bool
    user_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class LinkedWallet:
    address: str
    chain_type: str | None = None
    wallet_client_type: str | None = None


@dataclass(frozen=True)
class PrivyProfile:
    """Best-effort profile fetched from the Privy REST API."""

    user_id: str
    email: str | None = None
    wallets: tuple[LinkedWallet, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TokenConfig:
    """Static description of a payment token."""

    symbol: TokenSymbol
    decimals: int
    mainnet_mint: str | None
    devnet_mint: str | None

    def __post_init__(self) -> None:
        if self.decimals < 0:
            raise ValueError(f"Token decimals cannot be negative: {self.decimals}")


@dataclass(frozen=True)
class DiscountCheck:
    """Blockmind holder discount eligibility."""

    eligible: bool
    balance: float
    sol_equivalent: float

    def __post_init__(self) -> None:
        if self.balance < 0:
            raise ValueError(f"Token balance cannot be negative: {self.balance}")


@dataclass(frozen=True)
class ProjectPrice:
    """Price of the next paid project."""

    amount_usd_cents: int
    amount_sol_lamports: int
    has_discount: bool
    sol_price_usd: float

    def __post_init__(self) -> None:
        if self.amount_usd_cents <= 0:
            raise ValueError(f"Price must be positive: {self.amount_usd_cents}")
        if self.amount_sol_lamports <= 0:
            raise ValueError(f"Lamport amount must be positive: {self.amount_sol_lamports}")

    @property
    def amount_sol(self) -> float:
        return self.amount_sol_lamports / LAMPORTS_PER_SOL


@dataclass(frozen=True)
class IncomingTransfer:
    """
    A transfer into a deposit wallet, as reported by a webhook or found on chain.

    amount is lamports for SOL and UI units for SPL tokens.
    """

    deposit_wallet: str
    amount: float
    token_symbol: str
    token_mint: str | None
    signature: str
    slot: int | None = None
    payer_wallet: str | None = None

    def __post_init__(self) -> None:
        if not self.signature:
            raise ValueError("signature cannot be empty")
        if self.amount < 0:
            raise ValueError(f"Transfer amount cannot be negative: {self.amount}")

    @property
    def is_native(self) -> bool:
        return self.token_mint is None


@dataclass(frozen=True)
class SettlementResult:
    """A transfer that confirmed an intent."""

    intent_id: UUID
    signature: str
    amount_ui: float
    token_symbol: str


@dataclass(frozen=True)
class GeneratedWallet:
    """A new or imported Solana keypair with its encrypted secret."""

    public_key: str
    encrypted_secret_key: str


@dataclass(frozen=True)
class CommandResult:
    """Output of a shell command run inside a sandbox."""

    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class PreviewLink:
    url: str
    token: str | None = None
