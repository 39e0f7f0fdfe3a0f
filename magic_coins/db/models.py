"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from magic_coins.models.api import ReferenceKind, TransactionType

# BIGINT identity on PostgreSQL, rowid alias on SQLite
TransactionIdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class Balance(Base):
    """
    ORM model for balances table.

    One authoritative balance row per user. Only the transaction processor
    writes to it, always through conditional UPDATE statements.
    """

    __tablename__ = "balances"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Owner
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Balance and running totals
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_balance_non_negative"),
        CheckConstraint("total_earned >= 0", name="ck_total_earned_non_negative"),
        CheckConstraint("total_spent >= 0", name="ck_total_spent_non_negative"),
        CheckConstraint(
            "balance = total_earned - total_spent",
            name="ck_balance_ledger_consistency",
        ),
        UniqueConstraint("user_id", name="uq_balances_user_id"),
        Index("idx_balances_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Balance(user_id={self.user_id}, balance={self.balance}, "
            f"earned={self.total_earned}, spent={self.total_spent})>"
        )


class Transaction(Base):
    """
    ORM model for transactions table.

    Immutable, append-only ledger of every balance change. The id is
    monotonic and defines the append order per user.
    """

    __tablename__ = "transactions"

    # Primary Key
    id: Mapped[int] = mapped_column(TransactionIdType, primary_key=True, autoincrement=True)

    # Owner (no foreign key - the balance row may be created in the same unit of work)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Transaction type
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="transaction_type",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    # Signed amount: positive credits, negative debits
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Balance snapshot (denormalized for auditing)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Description
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    # Causing event
    reference_type: Mapped[ReferenceKind | None] = mapped_column(
        SQLEnum(
            ReferenceKind,
            name="reference_kind",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Idempotency
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_transaction_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_transaction_balance_after_non_negative"),
        CheckConstraint(
            "(transaction_type = 'spend' AND amount < 0) "
            "OR (transaction_type <> 'spend' AND amount > 0)",
            name="ck_transaction_sign_matches_type",
        ),
        CheckConstraint(
            "(reference_type IS NULL) = (reference_id IS NULL)",
            name="ck_transaction_reference_complete",
        ),
        UniqueConstraint("user_id", "idempotency_key", name="uq_transaction_idempotency"),
        Index("idx_transactions_user_id_id", "user_id", "id"),
        Index("idx_transactions_created_at", "created_at"),
        Index("idx_transactions_reference", "reference_type", "reference_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Transaction(id={self.id}, user_id={self.user_id}, "
            f"type={self.transaction_type}, amount={self.amount}, "
            f"balance_after={self.balance_after})>"
        )


class MonthlyUsage(Base):
    """
    ORM model for monthly_usage table.

    One row per user per calendar month (year_month = 'YYYY-MM').
    Rows for past months are never touched again.
    """

    __tablename__ = "monthly_usage"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)

    images_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    videos_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coins_granted: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("images_generated >= 0", name="ck_usage_images_non_negative"),
        CheckConstraint("videos_generated >= 0", name="ck_usage_videos_non_negative"),
        CheckConstraint("coins_granted >= 0", name="ck_usage_coins_non_negative"),
        UniqueConstraint("user_id", "year_month", name="uq_monthly_usage_user_month"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<MonthlyUsage(user_id={self.user_id}, year_month={self.year_month}, "
            f"images={self.images_generated}, videos={self.videos_generated})>"
        )


class Package(Base):
    """
    ORM model for packages table.

    Read-only catalog of purchasable coin bundles.
    """

    __tablename__ = "packages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    coins_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_coins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("coins_amount > 0", name="ck_package_coins_positive"),
        CheckConstraint("bonus_coins >= 0", name="ck_package_bonus_non_negative"),
        CheckConstraint("price_usd >= 0", name="ck_package_price_non_negative"),
        Index("idx_packages_active_sort", "is_active", "sort_order"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Package(id={self.id}, coins={self.coins_amount}+{self.bonus_coins})>"


class Setting(Base):
    """
    ORM model for settings table.

    Read-only runtime key/value configuration.
    """

    __tablename__ = "settings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    setting_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    setting_value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Setting(key={self.setting_key}, value={self.setting_value})>"


class ApiConfig(Base):
    """
    ORM model for api_configs table.

    Per-API coin cost of one image or video generation.
    """

    __tablename__ = "api_configs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    coins_per_image: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coins_per_video: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ApiConfig(id={self.id}, image={self.coins_per_image}, "
            f"video={self.coins_per_video})>"
        )
