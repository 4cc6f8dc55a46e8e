"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Blockmind API"
    api_version: str = "0.1.0"
    api_description: str = "Sandboxed project hosting with Solana payments"
    cors_allow_origins: list[str] = ["*"]

    # Identity - Privy
    PRIVY_APP_ID: str = ""
    PRIVY_APP_SECRET: str = ""
    privy_api_base: str = "https://auth.privy.io/api/v1"
    privy_issuer: str = "privy.io"

    # Admin
    ADMIN_API_KEY: str = ""

    # Wallet key encryption (64 hex chars, or any passphrase hashed with SHA-256)
    ENCRYPTION_KEY: str = ""
    require_encryption_key: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "blockmind-api"

    # Solana
    SOLANA_CLUSTER: str = "mainnet-beta"  # mainnet-beta or devnet
    SOLANA_MAINNET_RPC: str = "https://api.mainnet-beta.solana.com"
    SOLANA_DEVNET_RPC: str = "https://api.devnet.solana.com"
    solana_rpc_timeout: float = 15.0

    # Pricing
    SOL_PRICE_USD: float = 150.0  # Fallback when the price feed is down
    sol_price_feed_url: str = "https://api.binance.com/api/v3/ticker/price?symbol=SOLUSDT"
    sol_price_cache_seconds: int = 60
    BLOCKMIND_PRICE_SOL: float = 0.001
    BLOCKMIND_TOKEN_MINT: str = ""
    BLOCKMIND_TOKEN_MINT_DEVNET: str = ""
    blockmind_discount_threshold_sol: float = 1.0
    project_price_usd_cents: int = 1500
    discounted_project_price_usd_cents: int = 1000
    free_project_limit: int = 3
    payment_intent_ttl_seconds: int = 3600

    # Helius webhooks
    HELIUS_API_KEY: str = ""
    HELIUS_WEBHOOK_ID: str = ""
    HELIUS_WEBHOOK_URL: str = ""
    HELIUS_WEBHOOK_SECRET: str = ""
    helius_api_base: str = "https://api.helius.xyz/v0"

    # Daytona sandboxes
    DAYTONA_API_KEY: str = ""
    DAYTONA_API_URL: str = ""
    DAYTONA_TARGET: str = ""
    sandbox_image: str = "node:20"
    sandbox_capacity: int = 5
    sandbox_lock_timeout_seconds: float = 30.0
    projects_root: str = "/root/blockmind-projects"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        # Deposit wallet keys cannot be stored without it
        if self.require_encryption_key and not self.ENCRYPTION_KEY:
            errors.append("ENCRYPTION_KEY is required but empty or missing")

        if self.SOLANA_CLUSTER not in ("mainnet-beta", "devnet"):
            errors.append(
                f"SOLANA_CLUSTER must be 'mainnet-beta' or 'devnet', got: {self.SOLANA_CLUSTER}"
            )

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def is_devnet(self) -> bool:
        return self.SOLANA_CLUSTER == "devnet"

    @property
    def solana_rpc_url(self) -> str:
        """RPC endpoint for the configured cluster."""
        return self.SOLANA_DEVNET_RPC if self.is_devnet else self.SOLANA_MAINNET_RPC

    @property
    def blockmind_token_mint(self) -> str:
        return self.BLOCKMIND_TOKEN_MINT_DEVNET if self.is_devnet else self.BLOCKMIND_TOKEN_MINT

    @property
    def privy_jwks_url(self) -> str:
        return f"{self.privy_api_base}/apps/{self.PRIVY_APP_ID}/jwks.json"


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
