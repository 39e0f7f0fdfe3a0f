"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class TransactionType(str, Enum):
    """Ledger transaction type enumeration."""

    EARN = "earn"
    SPEND = "spend"
    PURCHASE = "purchase"
    SUBSCRIPTION_GRANT = "subscription_grant"
    ADMIN_GRANT = "admin_grant"

    @property
    def is_credit(self) -> bool:
        """True for every type that adds coins."""
        return self is not TransactionType.SPEND


class ReferenceKind(str, Enum):
    """Known kinds of events a transaction can point at."""

    GENERATION_IMAGE = "generation_image"
    GENERATION_VIDEO = "generation_video"
    PACKAGE_PURCHASE = "package_purchase"
    SUBSCRIPTION_GRANT = "subscription_grant"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class UsageType(str, Enum):
    """Billable generation kinds tracked in monthly usage."""

    IMAGE = "image"
    VIDEO = "video"


class LedgerErrorCode(str, Enum):
    """Expected business failures returned in a LedgerResult."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_AMOUNT = "invalid_amount"
    CONFIG_NOT_FOUND = "config_not_found"


YEAR_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"

# Largest value of the BIGINT balance and amount columns
MAX_COIN_AMOUNT = 2**63 - 1

# Largest value of the INTEGER usage counter columns
MAX_USAGE_INCREMENT = 2**31 - 1


# ============================================================================
# Request Models
# ============================================================================


class ReferenceModel(BaseModel):
    """Pointer to the event that caused a transaction."""

    kind: ReferenceKind
    id: str = Field(..., min_length=1, max_length=255)


class InitializeBalanceRequest(BaseModel):
    """POST /v1/ledger/{user_id}/initialize request body."""

    initial_coins: int | None = Field(
        None,
        ge=0,
        le=MAX_COIN_AMOUNT,
        description="Starting grant; defaults to the configured signup bonus"
    )


class SpendRequest(BaseModel):
    """POST /v1/ledger/{user_id}/spend request body."""

    # Lower bound not enforced here: non-positive amounts come back as invalid_amount results
    amount: int = Field(..., le=MAX_COIN_AMOUNT)
    description: str = Field(..., min_length=1, max_length=500)
    reference: ReferenceModel | None = None


class EarnRequest(BaseModel):
    """POST /v1/ledger/{user_id}/earn request body."""

    amount: int = Field(..., le=MAX_COIN_AMOUNT)
    description: str = Field(..., min_length=1, max_length=500)
    transaction_type: TransactionType = TransactionType.EARN
    reference: ReferenceModel | None = None
    idempotency_key: str | None = Field(None, min_length=1, max_length=255)
    create_if_missing: bool = True

    @field_validator("transaction_type")
    @classmethod
    def validate_credit_type(cls, v: TransactionType) -> TransactionType:
        """Spends go through the spend endpoint."""
        if not v.is_credit:
            raise ValueError("transaction_type must be a credit type")
        return v


class PurchaseRequest(BaseModel):
    """POST /v1/ledger/{user_id}/purchases request body."""

    package_id: str = Field(..., min_length=1, max_length=64)
    purchase_id: str = Field(..., min_length=1, max_length=200)


class SubscriptionGrantRequest(BaseModel):
    """POST /v1/ledger/{user_id}/subscription-grants request body."""

    subscription_id: str = Field(..., min_length=1, max_length=200)
    coins: int = Field(..., le=MAX_COIN_AMOUNT)
    year_month: str | None = Field(None, pattern=YEAR_MONTH_PATTERN)


class UsageUpdateRequest(BaseModel):
    """POST /v1/ledger/{user_id}/usage request body."""

    usage_type: UsageType
    increment: int = Field(1, gt=0, le=MAX_USAGE_INCREMENT)


# ============================================================================
# Response Models
# ============================================================================


class BalanceResponse(BaseModel):
    """Current balance of one user."""

    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    created_at: str
    updated_at: str


class TransactionItem(BaseModel):
    """One ledger entry."""

    transaction_id: int
    transaction_type: TransactionType
    amount: int
    balance_after: int
    description: str
    reference: ReferenceModel | None = None
    created_at: str


class TransactionListResponse(BaseModel):
    """GET /v1/ledger/{user_id}/transactions response."""

    transactions: list[TransactionItem]
    limit: int


class LedgerResultResponse(BaseModel):
    """Outcome of a spend or earn."""

    success: bool
    balance: int | None = None
    transaction: TransactionItem | None = None
    duplicate: bool = False
    error: LedgerErrorCode | None = None
    message: str | None = None


class CanAffordResponse(BaseModel):
    """GET /v1/ledger/{user_id}/can-afford response."""

    user_id: str
    amount: int
    can_afford: bool


class MonthlyUsageResponse(BaseModel):
    """Usage counters for one calendar month."""

    user_id: str
    year_month: str
    images_generated: int
    videos_generated: int
    coins_granted: int
    created_at: str
    updated_at: str


class UsageUpdateResponse(BaseModel):
    """POST /v1/ledger/{user_id}/usage response."""

    success: bool


class ReconciliationResponse(BaseModel):
    """GET /v1/ledger/{user_id}/reconcile response."""

    user_id: str
    balance: int
    total_earned: int
    total_spent: int
    ledger_sum: int
    credits_sum: int
    debits_sum: int
    last_balance_after: int | None
    transaction_count: int
    consistent: bool


class PackageResponse(BaseModel):
    """A purchasable coin bundle."""

    package_id: str
    name: str
    description: str | None = None
    coins_amount: int
    bonus_coins: int
    total_coins: int
    price_usd: str
    sort_order: int


class PackageListResponse(BaseModel):
    """GET /v1/catalog/packages response."""

    packages: list[PackageResponse]


class SettingResponse(BaseModel):
    """GET /v1/catalog/settings/{key} response."""

    key: str
    value: str


class ApiCostsResponse(BaseModel):
    """GET /v1/catalog/api-costs/{api_id} response."""

    api_id: str
    image_coins: int
    video_coins: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
