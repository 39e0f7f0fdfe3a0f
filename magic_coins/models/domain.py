"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from magic_coins.exceptions import DataIntegrityError, InvalidAmountError
from magic_coins.models.api import (
    MAX_COIN_AMOUNT,
    LedgerErrorCode,
    ReferenceKind,
    TransactionType,
    UsageType,
)


def validate_amount(amount: object) -> int:
    """Return amount if it is a positive integer that fits a BIGINT column.

    Raises:
        InvalidAmountError: anything else
    """
    # bool is an int subclass
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(amount)
    if amount <= 0 or amount > MAX_COIN_AMOUNT:
        raise InvalidAmountError(amount)
    return amount


def validate_user_id(user_id: str) -> None:
    """Reject empty or oversized user identifiers."""
    if not user_id or not user_id.strip():
        raise ValueError("user_id cannot be empty")
    if len(user_id) > 255:
        raise ValueError("user_id cannot exceed 255 characters")


@dataclass(frozen=True)
class Reference:
    """Typed pointer to the event that caused a transaction."""

    kind: ReferenceKind
    reference_id: str

    def __post_init__(self) -> None:
        """Validate reference fields."""
        if not isinstance(self.kind, ReferenceKind):
            raise ValueError(f"Unknown reference kind: {self.kind!r}")
        if not self.reference_id:
            raise ValueError("reference_id cannot be empty")
        if len(self.reference_id) > 255:
            raise ValueError("reference_id cannot exceed 255 characters")

    @classmethod
    def for_generation(cls, usage_type: UsageType, generation_id: str) -> "Reference":
        """Reference a generation job of the given kind."""
        kind = (
            ReferenceKind.GENERATION_IMAGE
            if usage_type is UsageType.IMAGE
            else ReferenceKind.GENERATION_VIDEO
        )
        return cls(kind=kind, reference_id=generation_id)


@dataclass(frozen=True)
class SpendIntent:
    """Domain model for a debit before persistence - immutable intent."""

    user_id: str
    amount: int
    description: str
    reference: Reference | None = None

    def __post_init__(self) -> None:
        """Validate spend constraints."""
        validate_user_id(self.user_id)
        validate_amount(self.amount)
        if not self.description:
            raise ValueError("Description cannot be empty")


@dataclass(frozen=True)
class EarnIntent:
    """Domain model for a credit before persistence - immutable intent."""

    user_id: str
    amount: int
    description: str
    transaction_type: TransactionType = TransactionType.EARN
    reference: Reference | None = None
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        """Validate earn constraints."""
        validate_user_id(self.user_id)
        validate_amount(self.amount)
        if not self.description:
            raise ValueError("Description cannot be empty")
        if not self.transaction_type.is_credit:
            raise ValueError(f"{self.transaction_type.value} is not a credit type")
        if self.idempotency_key is not None and not self.idempotency_key:
            raise ValueError("idempotency_key cannot be empty")


@dataclass(frozen=True)
class BalanceData:
    """Immutable balance snapshot."""

    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate balance invariants."""
        if self.balance < 0:
            raise DataIntegrityError(f"Balance cannot be negative: {self.balance}")
        if self.balance != self.total_earned - self.total_spent:
            raise DataIntegrityError(
                f"Balance {self.balance} != earned {self.total_earned} - spent {self.total_spent}"
            )


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger entry after persistence."""

    transaction_id: int
    user_id: str
    transaction_type: TransactionType
    amount: int
    balance_after: int
    description: str
    reference: Reference | None
    idempotency_key: str | None
    created_at: datetime


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a spend or earn; business failures are values, not exceptions."""

    success: bool
    balance: int | None = None
    transaction: TransactionData | None = None
    error: LedgerErrorCode | None = None
    message: str | None = None
    duplicate: bool = False

    @classmethod
    def ok(
        cls, balance: int, transaction: TransactionData | None, duplicate: bool = False
    ) -> "LedgerResult":
        return cls(success=True, balance=balance, transaction=transaction, duplicate=duplicate)

    @classmethod
    def failed(
        cls, error: LedgerErrorCode, message: str, balance: int | None = None
    ) -> "LedgerResult":
        return cls(success=False, balance=balance, error=error, message=message)


@dataclass(frozen=True)
class MonthlyUsageData:
    """Usage counters for one user and calendar month."""

    user_id: str
    year_month: str
    images_generated: int
    videos_generated: int
    coins_granted: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class PackageData:
    """Purchasable coin bundle."""

    package_id: str
    name: str
    description: str | None
    coins_amount: int
    bonus_coins: int
    price_usd: Decimal
    is_active: bool
    sort_order: int

    @property
    def total_coins(self) -> int:
        """Coins credited for one purchase, bonus included."""
        return self.coins_amount + self.bonus_coins


@dataclass(frozen=True)
class ApiCosts:
    """Per-generation coin cost for one API."""

    image_coins: int
    video_coins: int

    def cost_for(self, usage_type: UsageType) -> int:
        """Unit cost of one generation of the given kind."""
        return self.image_coins if usage_type is UsageType.IMAGE else self.video_coins


@dataclass(frozen=True)
class ReconciliationReport:
    """Comparison of the materialized balance against its transaction log."""

    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    ledger_sum: int
    credits_sum: int
    debits_sum: int
    last_balance_after: int | None
    transaction_count: int

    @property
    def consistent(self) -> bool:
        """True when the balance row and the log tell the same story."""
        last_matches = (
            self.last_balance_after == self.balance
            if self.last_balance_after is not None
            else self.balance == 0
        )
        return (
            self.ledger_sum == self.balance
            and self.credits_sum == self.total_earned
            and self.debits_sum == self.total_spent
            and last_matches
        )
