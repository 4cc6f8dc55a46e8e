"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BlockmindError(Exception):
    """Base exception for all service errors."""

    pass


class UserNotFoundError(BlockmindError):
    """Raised when no app user exists for an identity."""

    def __init__(self, privy_user_id: str) -> None:
        self.privy_user_id = privy_user_id
        super().__init__(f"User not found: {privy_user_id}")


class ProjectNotFoundError(BlockmindError):
    """Raised when a project can't be resolved by id or sandbox id."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Project not found: {reference}")


class IntentNotFoundError(BlockmindError):
    """Raised when a payment intent doesn't exist or belongs to another user."""

    def __init__(self, intent_id: str) -> None:
        self.intent_id = intent_id
        super().__init__(f"Payment intent not found: {intent_id}")


class InvalidIntentStateError(BlockmindError):
    """Raised when a payment intent is not pending."""

    def __init__(self, intent_id: UUID, status: str) -> None:
        self.intent_id = intent_id
        self.status = status
        super().__init__(f"Payment intent {intent_id} is {status}")


class DuplicateSettlementError(BlockmindError):
    """Raised when a transaction signature has already been settled."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Signature already settled: {signature}")


class InsufficientPaymentError(BlockmindError):
    """Raised when an on-chain transfer is below the expected amount."""

    def __init__(self, expected: float, received: float) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"Insufficient payment. Expected: {expected}, Received: {received}")


class TransactionNotFoundError(BlockmindError):
    """Raised when the RPC has no record of a signature."""

    def __init__(self, signature: str) -> None:
        self.signature = signature
        super().__init__(f"Transaction not found: {signature}")


class UnsupportedTokenError(BlockmindError):
    """Raised when a payment token symbol is unknown or has no mint configured."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"Unsupported token: {symbol}")


class PaymentRequiredError(BlockmindError):
    """Raised when a user is over the free project limit without a confirmed payment."""

    def __init__(self, projects_used: int, limit: int) -> None:
        self.projects_used = projects_used
        self.limit = limit
        super().__init__(
            f"You have reached your limit of {limit} free projects. "
            "Payment is required to create additional projects."
        )


class DuplicateProjectNameError(BlockmindError):
    """Raised when a user already owns a project with the same name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Project name already in use: {name}")


class NoAvailablePortError(BlockmindError):
    """Raised when every dev port in a sandbox is taken."""

    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(
            "No available ports. Too many concurrent projects in this sandbox."
        )


class SandboxError(BlockmindError):
    """Raised when a sandbox provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Sandbox error: {message}")


class SandboxNotFoundError(SandboxError):
    """Raised when the sandbox provider has no sandbox with this id."""

    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} not found")


class SandboxAssignmentError(SandboxError):
    """Raised when a user can't be placed in a shared sandbox."""

    def __init__(self, message: str, code: str) -> None:
        self.code = code
        super().__init__(message)


class SolanaRPCError(BlockmindError):
    """Raised when a Solana JSON-RPC call fails."""

    def __init__(self, method: str, message: str) -> None:
        self.method = method
        self.message = message
        super().__init__(f"Solana RPC {method} failed: {message}")


class EncryptionError(BlockmindError):
    """Raised when a stored secret can't be encrypted or decrypted."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Encryption error: {message}")


class InvalidPrivateKeyError(BlockmindError):
    """Raised when an imported private key can't be parsed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid private key: {message}")


class WalletConflictError(BlockmindError):
    """Raised when a wallet address already belongs to another user."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Wallet {address} is already in use by another account")


class WebhookConfigError(BlockmindError):
    """Raised when a required Helius setting is missing."""

    def __init__(self, missing: str) -> None:
        self.missing = missing
        super().__init__(f"Helius webhook not configured: missing {missing}")


class DatabaseError(BlockmindError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PriceFeedError(BlockmindError):
    """Raised when the SOL/USD price can't be fetched."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Price feed error: {message}")


class SandboxUnavailableError(SandboxError):
    """Raised when the sandbox provider API is unreachable or keeps failing."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class SandboxPathNotFoundError(SandboxError):
    """Raised when a file or directory is missing inside a sandbox."""

    def __init__(self, message: str, tried: list[str] | None = None) -> None:
        self.tried = tried or []
        super().__init__(message)


class SandboxCommandError(SandboxError):
    """Raised when a shell command inside a sandbox exits non-zero."""

    def __init__(self, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(message)


class DevServerPortConflictError(SandboxError):
    """Raised when a dev server port stays bound after every kill attempt."""

    def __init__(self, port: int, process: str) -> None:
        self.port = port
        self.process = process
        super().__init__(
            f"Port {port} is still in use after cleanup (process {process}). "
            "Kill the process manually or use a different port."
        )


class WalletNotFoundError(BlockmindError):
    """Raised when no stored wallet (or no stored key) matches an address."""

    def __init__(self, address: str, message: str = "Wallet not found") -> None:
        self.address = address
        self.message = message
        super().__init__(f"{message}: {address}")
