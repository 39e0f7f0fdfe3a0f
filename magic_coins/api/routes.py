"""
API Routes - FastAPI endpoints for ledger and catalog operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import JSONResponse

from magic_coins.api.dependencies import get_ledger, require_api_key
from magic_coins.ledger import MagicCoinLedger
from magic_coins.models.api import (
    YEAR_MONTH_PATTERN,
    ApiCostsResponse,
    BalanceResponse,
    CanAffordResponse,
    EarnRequest,
    HealthResponse,
    InitializeBalanceRequest,
    LedgerErrorCode,
    LedgerResultResponse,
    MonthlyUsageResponse,
    PackageListResponse,
    PackageResponse,
    PurchaseRequest,
    ReconciliationResponse,
    ReferenceModel,
    SettingResponse,
    SpendRequest,
    SubscriptionGrantRequest,
    TransactionItem,
    TransactionListResponse,
    UsageUpdateRequest,
    UsageUpdateResponse,
)
from magic_coins.models.domain import (
    BalanceData,
    LedgerResult,
    PackageData,
    Reference,
    TransactionData,
)
from magic_coins.services.processor import clamp_limit

router = APIRouter(dependencies=[Depends(require_api_key)])
health_router = APIRouter(tags=["health"])

# At least one non-whitespace character
UserId = Annotated[str, Path(min_length=1, max_length=255, pattern=r"\S")]

_ERROR_STATUS: dict[LedgerErrorCode, int] = {
    LedgerErrorCode.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    LedgerErrorCode.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    LedgerErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    LedgerErrorCode.CONFIG_NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


# ============================================================================
# Conversions
# ============================================================================


def _balance_response(balance: BalanceData) -> BalanceResponse:
    return BalanceResponse(
        user_id=balance.user_id,
        balance=balance.balance,
        total_earned=balance.total_earned,
        total_spent=balance.total_spent,
        created_at=balance.created_at.isoformat(),
        updated_at=balance.updated_at.isoformat(),
    )


def _transaction_item(transaction: TransactionData) -> TransactionItem:
    reference = (
        ReferenceModel(kind=transaction.reference.kind, id=transaction.reference.reference_id)
        if transaction.reference
        else None
    )
    return TransactionItem(
        transaction_id=transaction.transaction_id,
        transaction_type=transaction.transaction_type,
        amount=transaction.amount,
        balance_after=transaction.balance_after,
        description=transaction.description,
        reference=reference,
        created_at=transaction.created_at.isoformat(),
    )


def _package_response(package: PackageData) -> PackageResponse:
    return PackageResponse(
        package_id=package.package_id,
        name=package.name,
        description=package.description,
        coins_amount=package.coins_amount,
        bonus_coins=package.bonus_coins,
        total_coins=package.total_coins,
        price_usd=str(package.price_usd),
        sort_order=package.sort_order,
    )


def _to_reference(reference: ReferenceModel | None) -> Reference | None:
    if reference is None:
        return None
    return Reference(kind=reference.kind, reference_id=reference.id)


def _result_response(result: LedgerResult) -> JSONResponse:
    """
    Serialize a ledger result.

    Failures keep the typed body and map the error code to an HTTP status.
    """
    body = LedgerResultResponse(
        success=result.success,
        balance=result.balance,
        transaction=_transaction_item(result.transaction) if result.transaction else None,
        duplicate=result.duplicate,
        error=result.error,
        message=result.message,
    )
    status_code = (
        status.HTTP_200_OK
        if result.success or result.error is None
        else _ERROR_STATUS[result.error]
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ============================================================================
# Ledger Endpoints
# ============================================================================


@router.get("/v1/ledger/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: UserId,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Current balance of one user."""
    balance = await ledger.get_balance(user_id)
    if balance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No balance for user {user_id}",
        )
    return _balance_response(balance)


@router.post("/v1/ledger/{user_id}/initialize", response_model=BalanceResponse)
async def initialize_balance(
    user_id: UserId,
    request: InitializeBalanceRequest | None = None,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> BalanceResponse:
    """
    Create the user's balance with the signup grant.

    Idempotent: an existing balance is returned unchanged.
    """
    initial_coins = request.initial_coins if request else None
    balance = await ledger.initialize_balance(user_id, initial_coins)
    return _balance_response(balance)


@router.post(
    "/v1/ledger/{user_id}/spend",
    response_model=LedgerResultResponse,
    responses={402: {"model": LedgerResultResponse}, 404: {"model": LedgerResultResponse}},
)
async def spend(
    user_id: UserId,
    request: SpendRequest,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> JSONResponse:
    """
    Debit coins before a paid action.

    402 when the balance is too low, 404 when the user has no balance,
    400 for a non-positive amount.
    """
    result = await ledger.spend(
        user_id, request.amount, request.description, _to_reference(request.reference)
    )
    return _result_response(result)


@router.post("/v1/ledger/{user_id}/earn", response_model=LedgerResultResponse)
async def earn(
    user_id: UserId,
    request: EarnRequest,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> JSONResponse:
    """Credit coins; a repeated idempotency_key returns the original entry."""
    result = await ledger.earn(
        user_id,
        request.amount,
        request.description,
        transaction_type=request.transaction_type,
        reference=_to_reference(request.reference),
        idempotency_key=request.idempotency_key,
        create_if_missing=request.create_if_missing,
    )
    return _result_response(result)


@router.post("/v1/ledger/{user_id}/purchases", response_model=LedgerResultResponse)
async def purchase_package(
    user_id: UserId,
    request: PurchaseRequest,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> JSONResponse:
    """Credit a purchased package (called by payment webhooks)."""
    result = await ledger.purchase_package(user_id, request.package_id, request.purchase_id)
    return _result_response(result)


@router.post("/v1/ledger/{user_id}/subscription-grants", response_model=LedgerResultResponse)
async def grant_subscription_coins(
    user_id: UserId,
    request: SubscriptionGrantRequest,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> JSONResponse:
    """Credit a subscription's monthly coins, once per subscription and month."""
    result = await ledger.grant_subscription_coins(
        user_id, request.subscription_id, request.coins, request.year_month
    )
    return _result_response(result)


@router.get("/v1/ledger/{user_id}/transactions", response_model=TransactionListResponse)
async def get_transactions(
    user_id: UserId,
    limit: int | None = Query(None, ge=1),
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> TransactionListResponse:
    """Newest-first transaction history."""
    transactions = await ledger.get_transactions(user_id, limit)
    return TransactionListResponse(
        transactions=[_transaction_item(t) for t in transactions],
        limit=clamp_limit(limit),
    )


@router.get("/v1/ledger/{user_id}/can-afford", response_model=CanAffordResponse)
async def can_afford(
    user_id: UserId,
    amount: int = Query(...),
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> CanAffordResponse:
    """Advisory balance check; spend remains the authoritative gate."""
    affordable = await ledger.can_afford(user_id, amount)
    return CanAffordResponse(user_id=user_id, amount=amount, can_afford=affordable)


@router.get("/v1/ledger/{user_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile(
    user_id: UserId,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> ReconciliationResponse:
    """Compare the stored balance against the transaction log."""
    report = await ledger.reconcile(user_id)
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No balance for user {user_id}",
        )
    return ReconciliationResponse(
        user_id=report.user_id,
        balance=report.balance,
        total_earned=report.total_earned,
        total_spent=report.total_spent,
        ledger_sum=report.ledger_sum,
        credits_sum=report.credits_sum,
        debits_sum=report.debits_sum,
        last_balance_after=report.last_balance_after,
        transaction_count=report.transaction_count,
        consistent=report.consistent,
    )


@router.get("/v1/ledger/{user_id}/usage", response_model=MonthlyUsageResponse)
async def get_monthly_usage(
    user_id: UserId,
    year_month: str | None = Query(None, pattern=YEAR_MONTH_PATTERN),
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> MonthlyUsageResponse:
    """Usage counters for a month (current UTC month by default)."""
    usage = await ledger.get_user_monthly_usage(user_id, year_month)
    if usage is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No usage recorded for user {user_id}",
        )
    return MonthlyUsageResponse(
        user_id=usage.user_id,
        year_month=usage.year_month,
        images_generated=usage.images_generated,
        videos_generated=usage.videos_generated,
        coins_granted=usage.coins_granted,
        created_at=usage.created_at.isoformat(),
        updated_at=usage.updated_at.isoformat(),
    )


@router.post("/v1/ledger/{user_id}/usage", response_model=UsageUpdateResponse)
async def update_monthly_usage(
    user_id: UserId,
    request: UsageUpdateRequest,
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> UsageUpdateResponse:
    """Record generations after a paid action succeeded."""
    updated = await ledger.update_monthly_usage(user_id, request.usage_type, request.increment)
    return UsageUpdateResponse(success=updated)


# ============================================================================
# Catalog Endpoints
# ============================================================================


@router.get("/v1/catalog/packages", response_model=PackageListResponse)
async def list_packages(
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> PackageListResponse:
    """Active coin packages in display order."""
    packages = await ledger.get_packages()
    return PackageListResponse(packages=[_package_response(p) for p in packages])


@router.get("/v1/catalog/settings/{key}", response_model=SettingResponse)
async def get_setting(
    key: str = Path(..., min_length=1, max_length=100),
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> SettingResponse:
    """Raw value of one runtime setting."""
    value = await ledger.get_setting(key)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Setting {key} not configured",
        )
    return SettingResponse(key=key, value=value)


@router.get("/v1/catalog/api-costs/{api_id}", response_model=ApiCostsResponse)
async def get_api_costs(
    api_id: str = Path(..., min_length=1, max_length=64),
    ledger: MagicCoinLedger = Depends(get_ledger),
) -> ApiCostsResponse:
    """Coin cost per generation; unconfigured APIs get the defaults."""
    costs = await ledger.get_api_costs(api_id)
    return ApiCostsResponse(
        api_id=api_id, image_coins=costs.image_coins, video_coins=costs.video_coins
    )


# ============================================================================
# Health
# ============================================================================


@health_router.get("/health", response_model=HealthResponse)
async def health_check(ledger: MagicCoinLedger = Depends(get_ledger)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    if not await ledger.ping():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database disconnected",
        )
    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
