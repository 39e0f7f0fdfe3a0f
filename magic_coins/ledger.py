"""
Magic Coin Ledger client - Public entry point for every ledger operation.

Built once at startup and shared by request handlers. The client owns the
engine (and its connection pool); each call runs in its own short-lived
session.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from opentelemetry import trace
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from magic_coins.config import Settings
from magic_coins.db.session import build_engine, build_session_factory
from magic_coins.exceptions import InvalidAmountError
from magic_coins.models.api import LedgerErrorCode, ReferenceKind, TransactionType, UsageType
from magic_coins.models.domain import (
    ApiCosts,
    BalanceData,
    LedgerResult,
    MonthlyUsageData,
    PackageData,
    ReconciliationReport,
    Reference,
    TransactionData,
    validate_amount,
)
from magic_coins.observability.logging import log_context
from magic_coins.observability.tracing import (
    instrument_sqlalchemy,
    record_ledger_result,
    trace_operation,
)
from magic_coins.services.catalog import CatalogService
from magic_coins.services.processor import TransactionProcessor
from magic_coins.services.usage import UsageTracker

logger = get_logger(__name__)


class MagicCoinLedger:
    """Balances, transactions, usage counters and catalog reads."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_settings(cls, settings: Settings) -> "MagicCoinLedger":
        """Create the engine and session factory from configuration."""
        engine = build_engine(settings)
        instrument_sqlalchemy(engine)
        return cls(build_session_factory(engine), engine)

    async def close(self) -> None:
        """Dispose of the connection pool."""
        if self.engine is not None:
            await self.engine.dispose()

    @asynccontextmanager
    async def _session(
        self, operation: str, user_id: str | None = None
    ) -> AsyncIterator[AsyncSession]:
        """One short-lived session inside a ledger.<operation> span, user_id bound to logs."""
        with (
            trace_operation(f"ledger.{operation}", user_id=user_id),
            log_context(user_id=user_id),
        ):
            async with self.session_factory() as session:
                yield session

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            async with self._session("ping") as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.error("database_ping_failed", exc_info=True)
            return False
        return True

    # ========================================================================
    # Balances and transactions
    # ========================================================================

    async def get_balance(self, user_id: str) -> BalanceData | None:
        async with self._session("get_balance", user_id) as session:
            return await TransactionProcessor(session).get_balance(user_id)

    async def initialize_balance(
        self, user_id: str, initial_coins: int | None = None
    ) -> BalanceData:
        """Idempotently create a balance; the grant defaults to the signup bonus."""
        async with self._session("initialize_balance", user_id) as session:
            if initial_coins is None:
                initial_coins = await CatalogService(session).get_signup_bonus()
            return await TransactionProcessor(session).initialize_balance(user_id, initial_coins)

    async def spend(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference: Reference | None = None,
    ) -> LedgerResult:
        async with self._session("spend", user_id) as session:
            result = await TransactionProcessor(session).spend(
                user_id, amount, description, reference
            )
            return record_ledger_result(trace.get_current_span(), result)

    async def earn(
        self,
        user_id: str,
        amount: int,
        description: str,
        transaction_type: TransactionType = TransactionType.EARN,
        reference: Reference | None = None,
        idempotency_key: str | None = None,
        create_if_missing: bool = True,
    ) -> LedgerResult:
        async with self._session("earn", user_id) as session:
            result = await TransactionProcessor(session).earn(
                user_id,
                amount,
                description,
                transaction_type=transaction_type,
                reference=reference,
                idempotency_key=idempotency_key,
                create_if_missing=create_if_missing,
            )
            return record_ledger_result(trace.get_current_span(), result)

    async def get_transactions(
        self, user_id: str, limit: int | None = None
    ) -> list[TransactionData]:
        async with self._session("get_transactions", user_id) as session:
            return await TransactionProcessor(session).get_transactions(user_id, limit)

    async def can_afford(self, user_id: str, amount: int) -> bool:
        async with self._session("can_afford", user_id) as session:
            return await TransactionProcessor(session).can_afford(user_id, amount)

    async def reconcile(self, user_id: str) -> ReconciliationReport | None:
        async with self._session("reconcile", user_id) as session:
            return await TransactionProcessor(session).reconcile(user_id)

    # ========================================================================
    # Purchases, subscriptions and generation charges
    # ========================================================================

    async def purchase_package(
        self, user_id: str, package_id: str, purchase_id: str
    ) -> LedgerResult:
        """
        Credit the coins of a purchased package.

        Keyed on purchase_id, so a retried payment webhook never grants twice.
        A retry is answered from the log before the package is looked up, so
        deactivating a package does not turn replays into failures.
        """
        idempotency_key = f"purchase:{purchase_id}"
        async with self._session("purchase_package", user_id) as session:
            span = trace.get_current_span()
            processor = TransactionProcessor(session)
            duplicate = await processor.find_duplicate(user_id, idempotency_key)
            if duplicate is not None:
                return record_ledger_result(span, duplicate)

            package = await CatalogService(session).get_package(package_id)
            if package is None or not package.is_active:
                logger.warning(
                    "purchase_unknown_package", user_id=user_id, package_id=package_id
                )
                return record_ledger_result(
                    span,
                    LedgerResult.failed(
                        LedgerErrorCode.CONFIG_NOT_FOUND,
                        f"Package {package_id} is not available",
                    ),
                )

            result = await processor.earn(
                user_id,
                package.total_coins,
                f"Purchased {package.name}",
                transaction_type=TransactionType.PURCHASE,
                reference=Reference(ReferenceKind.PACKAGE_PURCHASE, purchase_id),
                idempotency_key=idempotency_key,
            )
            return record_ledger_result(span, result)

    async def grant_subscription_coins(
        self,
        user_id: str,
        subscription_id: str,
        coins: int,
        year_month: str | None = None,
    ) -> LedgerResult:
        async with self._session("grant_subscription_coins", user_id) as session:
            result = await TransactionProcessor(session).grant_subscription_coins(
                user_id, subscription_id, coins, year_month
            )
            return record_ledger_result(trace.get_current_span(), result)

    async def spend_for_generation(
        self,
        user_id: str,
        api_id: str,
        usage_type: UsageType,
        generation_id: str,
        count: int = 1,
    ) -> LedgerResult:
        """Charge count generations at the API's configured unit cost."""
        try:
            validate_amount(count)
        except InvalidAmountError as exc:
            return LedgerResult.failed(LedgerErrorCode.INVALID_AMOUNT, str(exc))

        async with self._session("spend_for_generation", user_id) as session:
            costs = await CatalogService(session).get_api_costs(api_id)
            amount = costs.cost_for(usage_type) * count
            result = await TransactionProcessor(session).spend(
                user_id,
                amount,
                f"{usage_type.value} generation via {api_id}",
                Reference.for_generation(usage_type, generation_id),
            )
            return record_ledger_result(trace.get_current_span(), result)

    # ========================================================================
    # Monthly usage
    # ========================================================================

    async def get_user_monthly_usage(
        self, user_id: str, year_month: str | None = None
    ) -> MonthlyUsageData | None:
        async with self._session("get_user_monthly_usage", user_id) as session:
            return await UsageTracker(session).get_user_monthly_usage(user_id, year_month)

    async def update_monthly_usage(
        self, user_id: str, usage_type: UsageType | str, increment: int = 1
    ) -> bool:
        async with self._session("update_monthly_usage", user_id) as session:
            return await UsageTracker(session).update_monthly_usage(
                user_id, usage_type, increment
            )

    # ========================================================================
    # Catalog
    # ========================================================================

    async def get_packages(self) -> list[PackageData]:
        async with self._session("get_packages") as session:
            return await CatalogService(session).get_packages()

    async def get_setting(self, key: str) -> str | None:
        async with self._session("get_setting") as session:
            return await CatalogService(session).get_setting(key)

    async def get_api_costs(self, api_id: str) -> ApiCosts:
        async with self._session("get_api_costs") as session:
            return await CatalogService(session).get_api_costs(api_id)
