"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class AppUser(Base):
    """
    ORM model for app_users table.

    One row per Privy identity. Created lazily on the first authenticated
    request.
    """

    __tablename__ = "app_users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    privy_user_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Signup wallet (Privy embedded or external)
    wallet_address: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    wallet_provider: Mapped[str | None] = mapped_column(Text, nullable=True)
    wallet_secret_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Per-user deposit wallet for payments
    deposit_wallet_address: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    deposit_wallet_secret_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    sandbox_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("idx_app_users_sandbox_id", "sandbox_id"),
    )

    def __repr__(self) -> str:
        return f"<AppUser(id={self.id}, privy_user_id={self.privy_user_id})>"


class Sandbox(Base):
    """ORM model for sandboxes table. A shared Daytona sandbox and its occupancy."""

    __tablename__ = "sandboxes"

    sandbox_id: Mapped[str] = mapped_column(Text, primary_key=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    active_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    last_assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("active_users >= 0", name="ck_sandbox_active_users_non_negative"),
        Index("idx_sandboxes_active", "active_users", "capacity"),
    )

    def __repr__(self) -> str:
        return (
            f"<Sandbox(sandbox_id={self.sandbox_id}, "
            f"active_users={self.active_users}/{self.capacity})>"
        )


class UserSandbox(Base):
    """ORM model for user_sandboxes table. At most one sandbox per user."""

    __tablename__ = "user_sandboxes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    app_user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("app_users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    sandbox_id: Mapped[str] = mapped_column(
        Text, ForeignKey("sandboxes.sandbox_id", ondelete="CASCADE"), nullable=False
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_user_sandboxes_sandbox", "sandbox_id"),)


class Project(Base):
    """
    ORM model for projects table.

    user_id is nullable for legacy anonymous projects, which the admin
    fix-up links to their owners through the sandbox mapping.
    """

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    sandbox_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    preview_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("app_users.id", ondelete="CASCADE"),
        nullable=True,
    )
    project_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    dev_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uniq_user_project_name"),
        Index(
            "uniq_sandbox_dev_port",
            "sandbox_id",
            "dev_port",
            unique=True,
            postgresql_where=(dev_port.isnot(None)),
        ),
        Index("idx_projects_sandbox_id", "sandbox_id"),
        Index("idx_projects_user_id", "user_id"),
        Index("idx_projects_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, sandbox_id={self.sandbox_id}, "
            f"name={self.name}, dev_port={self.dev_port})>"
        )


class ProjectMessage(Base):
    """ORM model for project_messages table. Ordered chat transcript of a project."""

    __tablename__ = "project_messages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    sandbox_id: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    input: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    result: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    preview_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("project_id", "sequence_number", name="uq_project_message_sequence"),
        Index("idx_project_messages_sandbox_id", "sandbox_id"),
    )


class UserCredits(Base):
    """ORM model for user_credits table. Incremented atomically with an upsert."""

    __tablename__ = "user_credits"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("app_users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_credits_non_negative"),)


class PaymentIntent(Base):
    """
    ORM model for payment_intents table.

    An expected payment into the user's deposit wallet. Status moves from
    pending to confirmed at most once, guarded by a conditional update.
    """

    __tablename__ = "payment_intents"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False
    )
    # Not a foreign key: the intent is created before the project row exists
    project_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    amount_usd_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_sol_lamports: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    amount_token_ui: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    credits_to_grant: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False, default="SOL")
    token_mint: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposit_wallet: Mapped[str] = mapped_column(Text, nullable=False)
    cluster: Mapped[str] = mapped_column(String(20), nullable=False, default="mainnet-beta")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'expired', 'failed')",
            name="ck_payment_intent_status",
        ),
        CheckConstraint("amount_usd_cents >= 0", name="ck_payment_intent_amount_non_negative"),
        Index("idx_payment_intents_user", "user_id"),
        Index("idx_payment_intents_project", "project_id"),
        Index(
            "idx_payment_intents_deposit_wallet_pending",
            "deposit_wallet",
            postgresql_where=(status == "pending"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentIntent(id={self.id}, token={self.token_symbol}, "
            f"usd_cents={self.amount_usd_cents}, status={self.status})>"
        )


class PaymentSettlement(Base):
    """ORM model for payment_settlements table. One row per on-chain signature."""

    __tablename__ = "payment_settlements"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    intent_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("payment_intents.id", ondelete="CASCADE"),
        nullable=False,
    )
    signature: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    slot: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    amount_raw: Mapped[Decimal | None] = mapped_column(Numeric(38, 0), nullable=True)
    amount_ui: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    token_mint: Mapped[str | None] = mapped_column(Text, nullable=True)
    payer_wallet: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposit_wallet: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_payment_settlements_intent", "intent_id"),)

    def __repr__(self) -> str:
        return f"<PaymentSettlement(signature={self.signature}, intent_id={self.intent_id})>"


class UserTokenBalance(Base):
    """ORM model for user_token_balances table. Last observed holder balance per mint."""

    __tablename__ = "user_token_balances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False
    )
    token_mint: Mapped[str] = mapped_column(Text, nullable=False)
    balance_ui: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=0)
    balance_sol_equivalent: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    last_checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "token_mint", name="uq_user_token_balance"),
    )
