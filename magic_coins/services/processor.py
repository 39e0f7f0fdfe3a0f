"""
Transaction Processor - The only component that mutates balances.

NO DICTIONARIES - All operations use strongly typed domain models.

Every balance change and its log entry commit or roll back together. Business
rejections come back as LedgerResult values; storage failures surface as
PersistenceError and are never retried here.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from magic_coins.config import settings
from magic_coins.db.models import Balance, Transaction
from magic_coins.exceptions import InvalidAmountError, PersistenceError
from magic_coins.models.api import LedgerErrorCode, ReferenceKind, TransactionType
from magic_coins.models.domain import (
    BalanceData,
    EarnIntent,
    LedgerResult,
    ReconciliationReport,
    Reference,
    SpendIntent,
    TransactionData,
    validate_amount,
    validate_user_id,
)
from magic_coins.observability.metrics import metrics
from magic_coins.services.ledger_store import LedgerStore
from magic_coins.services.usage import UsageTracker, current_year_month, validate_year_month

logger = get_logger(__name__)


def clamp_limit(limit: int | None) -> int:
    """Page size for transaction listings, within 1..max_transaction_limit."""
    page_size = settings.default_transaction_limit if limit is None else limit
    return max(1, min(page_size, settings.max_transaction_limit))


class TransactionProcessor:
    """Spend and earn with atomicity and validation."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize processor with database session."""
        self.session = session
        self.store = LedgerStore(session)
        self.usage = UsageTracker(session)

    @asynccontextmanager
    async def _persistence_guard(self, operation: str) -> AsyncIterator[None]:
        """Roll back and translate storage failures into PersistenceError."""
        try:
            yield
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("ledger_persistence_failed", operation=operation, exc_info=True)
            metrics.record_error(type(exc).__name__, operation)
            raise PersistenceError(operation, str(exc)) from exc
        except PersistenceError as exc:
            await self.session.rollback()
            logger.error(
                "ledger_verification_failed",
                operation=operation,
                error=exc.message,
            )
            metrics.record_error(type(exc).__name__, operation)
            raise

    async def get_balance(self, user_id: str) -> BalanceData | None:
        """Current balance, or None when the user has no balance row."""
        async with self._persistence_guard("get_balance"):
            balance = await self.store.get_balance(user_id)
            return _balance_to_domain(balance) if balance else None

    async def initialize_balance(self, user_id: str, initial_coins: int) -> BalanceData:
        """
        Create the user's balance with a starting grant, once.

        Calling again for an existing user returns the stored balance unchanged.

        Raises:
            InvalidAmountError: initial_coins is negative or not an integer
            PersistenceError: the write failed
        """
        validate_user_id(user_id)

        async with self._persistence_guard("initialize_balance"):
            balance, created = await self.store.initialize_balance(user_id, initial_coins)
            data = _balance_to_domain(balance)
            await self.session.commit()

        if created:
            metrics.record_balance_initialized()
            logger.info("balance_initialized", user_id=user_id, initial_coins=initial_coins)
        else:
            logger.debug("balance_already_initialized", user_id=user_id, balance=data.balance)
        return data

    async def spend(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference: Reference | None = None,
    ) -> LedgerResult:
        """
        Debit coins before a paid action.

        The balance check and the decrement are one conditional UPDATE. When it
        matches no row nothing is written and the failure is classified with a
        follow-up read.
        """
        try:
            intent = SpendIntent(
                user_id=user_id, amount=amount, description=description, reference=reference
            )
        except InvalidAmountError as exc:
            metrics.record_spend(False, 0, LedgerErrorCode.INVALID_AMOUNT.value)
            logger.warning("spend_invalid_amount", user_id=user_id, amount=amount)
            return LedgerResult.failed(LedgerErrorCode.INVALID_AMOUNT, str(exc))

        async with self._persistence_guard("spend"):
            new_balance = await self.store.debit(intent.user_id, intent.amount)

            if new_balance is None:
                await self.session.rollback()
                current = await self.store.get_balance(intent.user_id)
                if current is None:
                    metrics.record_spend(
                        False, intent.amount, LedgerErrorCode.ACCOUNT_NOT_FOUND.value
                    )
                    logger.info("spend_account_not_found", user_id=intent.user_id)
                    return LedgerResult.failed(
                        LedgerErrorCode.ACCOUNT_NOT_FOUND,
                        f"No balance for user {intent.user_id}",
                    )

                metrics.record_spend(
                    False, intent.amount, LedgerErrorCode.INSUFFICIENT_FUNDS.value
                )
                logger.info(
                    "spend_insufficient_funds",
                    user_id=intent.user_id,
                    amount=intent.amount,
                    balance=current.balance,
                )
                return LedgerResult.failed(
                    LedgerErrorCode.INSUFFICIENT_FUNDS,
                    f"Balance {current.balance} is less than {intent.amount}",
                    balance=current.balance,
                )

            entry = await self.store.append_transaction(
                user_id=intent.user_id,
                transaction_type=TransactionType.SPEND,
                amount=-intent.amount,
                balance_after=new_balance,
                description=intent.description,
                reference=intent.reference,
            )
            transaction = _transaction_to_domain(entry)
            await self.session.commit()

        metrics.record_spend(True, intent.amount)
        logger.info(
            "coins_spent",
            user_id=intent.user_id,
            amount=intent.amount,
            balance_after=new_balance,
            transaction_id=transaction.transaction_id,
        )
        return LedgerResult.ok(new_balance, transaction)

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
        """
        Credit coins.

        A missing balance row is created with zero coins first unless
        create_if_missing is False. A repeated idempotency_key returns the
        original transaction with duplicate=True and leaves the balance alone.
        """
        try:
            intent = EarnIntent(
                user_id=user_id,
                amount=amount,
                description=description,
                transaction_type=transaction_type,
                reference=reference,
                idempotency_key=idempotency_key,
            )
        except InvalidAmountError as exc:
            metrics.record_earn(TransactionType(transaction_type).value, False, 0)
            logger.warning("earn_invalid_amount", user_id=user_id, amount=amount)
            return LedgerResult.failed(LedgerErrorCode.INVALID_AMOUNT, str(exc))

        return await self._earn(intent, create_if_missing)

    async def grant_subscription_coins(
        self,
        user_id: str,
        subscription_id: str,
        coins: int,
        year_month: str | None = None,
    ) -> LedgerResult:
        """
        Credit a subscription's monthly allotment, at most once per month.

        The grant is also added to that month's coins_granted counter in the
        same database transaction.
        """
        month = validate_year_month(year_month) if year_month else current_year_month()
        try:
            intent = EarnIntent(
                user_id=user_id,
                amount=coins,
                description=f"Subscription coins for {month}",
                transaction_type=TransactionType.SUBSCRIPTION_GRANT,
                reference=Reference(ReferenceKind.SUBSCRIPTION_GRANT, subscription_id),
                idempotency_key=f"subscription:{subscription_id}:{month}",
            )
        except InvalidAmountError as exc:
            metrics.record_earn(TransactionType.SUBSCRIPTION_GRANT.value, False, 0)
            logger.warning("subscription_grant_invalid_amount", user_id=user_id, coins=coins)
            return LedgerResult.failed(LedgerErrorCode.INVALID_AMOUNT, str(exc))

        return await self._earn(intent, create_if_missing=True, granted_month=month)

    async def _earn(
        self,
        intent: EarnIntent,
        create_if_missing: bool,
        granted_month: str | None = None,
    ) -> LedgerResult:
        async with self._persistence_guard("earn"):
            if intent.idempotency_key:
                existing = await self.store.find_transaction_by_idempotency_key(
                    intent.user_id, intent.idempotency_key
                )
                if existing:
                    return await self._duplicate_result(existing, intent)

            try:
                result = await self._apply_earn(intent, create_if_missing, granted_month)
                if not result.success:
                    await self.session.rollback()
                    metrics.record_earn(intent.transaction_type.value, False, intent.amount)
                    logger.info(
                        "earn_rejected",
                        user_id=intent.user_id,
                        amount=intent.amount,
                        error=result.error.value if result.error else None,
                    )
                    return result
                await self.session.commit()
            except IntegrityError:
                # A concurrent retry with the same key won the insert
                await self.session.rollback()
                if not intent.idempotency_key:
                    raise
                existing = await self.store.find_transaction_by_idempotency_key(
                    intent.user_id, intent.idempotency_key
                )
                if existing is None:
                    raise
                return await self._duplicate_result(existing, intent)

        metrics.record_earn(intent.transaction_type.value, True, intent.amount)
        logger.info(
            "coins_earned",
            user_id=intent.user_id,
            amount=intent.amount,
            transaction_type=intent.transaction_type.value,
            balance_after=result.balance,
            idempotency_key=intent.idempotency_key,
        )
        return result

    async def _apply_earn(
        self,
        intent: EarnIntent,
        create_if_missing: bool,
        granted_month: str | None,
    ) -> LedgerResult:
        """Credit the balance and append the entry. Does not commit."""
        if create_if_missing:
            created = await self.store.insert_balance_if_absent(intent.user_id, 0)
            if created:
                metrics.record_balance_initialized()
                logger.info("balance_initialized_lazily", user_id=intent.user_id)

        new_balance = await self.store.credit(intent.user_id, intent.amount)
        if new_balance is None:
            current = await self.store.get_balance(intent.user_id)
            if current is None:
                return LedgerResult.failed(
                    LedgerErrorCode.ACCOUNT_NOT_FOUND,
                    f"No balance for user {intent.user_id}",
                )
            return LedgerResult.failed(
                LedgerErrorCode.INVALID_AMOUNT,
                f"Crediting {intent.amount} would exceed the maximum balance",
                balance=current.balance,
            )

        entry = await self.store.append_transaction(
            user_id=intent.user_id,
            transaction_type=intent.transaction_type,
            amount=intent.amount,
            balance_after=new_balance,
            description=intent.description,
            reference=intent.reference,
            idempotency_key=intent.idempotency_key,
        )

        if granted_month:
            await self.usage.add_counts(intent.user_id, granted_month, coins=intent.amount)

        return LedgerResult.ok(new_balance, _transaction_to_domain(entry))

    async def _duplicate_result(self, existing: Transaction, intent: EarnIntent) -> LedgerResult:
        """Replay of an already-applied earn."""
        if (
            existing.amount != intent.amount
            or existing.transaction_type != intent.transaction_type
        ):
            logger.warning(
                "idempotency_key_payload_mismatch",
                user_id=intent.user_id,
                idempotency_key=intent.idempotency_key,
                stored_amount=existing.amount,
                requested_amount=intent.amount,
            )

        return await self._replay(existing)

    async def _replay(self, existing: Transaction) -> LedgerResult:
        transaction = _transaction_to_domain(existing)
        balance = await self.store.get_balance(existing.user_id)
        current = balance.balance if balance else transaction.balance_after
        logger.info(
            "earn_duplicate",
            user_id=existing.user_id,
            idempotency_key=existing.idempotency_key,
            transaction_id=transaction.transaction_id,
        )
        return LedgerResult.ok(current, transaction, duplicate=True)

    async def find_duplicate(self, user_id: str, idempotency_key: str) -> LedgerResult | None:
        """
        Replay of an earn already booked under idempotency_key, or None.

        Lets callers answer a retry before re-checking preconditions that may
        have changed since the first attempt.
        """
        async with self._persistence_guard("find_duplicate"):
            existing = await self.store.find_transaction_by_idempotency_key(
                user_id, idempotency_key
            )
            if existing is None:
                return None
            return await self._replay(existing)

    async def get_transactions(
        self, user_id: str, limit: int | None = None
    ) -> list[TransactionData]:
        """Newest-first page of transactions; limit is clamped to the configured range."""
        page_size = clamp_limit(limit)
        async with self._persistence_guard("get_transactions"):
            entries = await self.store.list_transactions(user_id, page_size)
            return [_transaction_to_domain(entry) for entry in entries]

    async def can_afford(self, user_id: str, amount: int) -> bool:
        """Advisory read; the authoritative check happens inside spend."""
        try:
            validate_amount(amount)
        except InvalidAmountError:
            return False

        async with self._persistence_guard("can_afford"):
            balance = await self.store.get_balance(user_id)

        return balance is not None and balance.balance >= amount

    async def reconcile(self, user_id: str) -> ReconciliationReport | None:
        """Compare the balance row with its transaction log."""
        async with self._persistence_guard("reconcile"):
            balance = await self.store.get_balance(user_id)
            if balance is None:
                return None
            totals = await self.store.ledger_totals(user_id)

        report = ReconciliationReport(
            user_id=user_id,
            balance=balance.balance,
            total_earned=balance.total_earned,
            total_spent=balance.total_spent,
            ledger_sum=totals.ledger_sum,
            credits_sum=totals.credits_sum,
            debits_sum=totals.debits_sum,
            last_balance_after=totals.last_balance_after,
            transaction_count=totals.transaction_count,
        )
        if not report.consistent:
            logger.error(
                "ledger_drift_detected",
                user_id=user_id,
                balance=report.balance,
                ledger_sum=report.ledger_sum,
                last_balance_after=report.last_balance_after,
            )
        return report


def _balance_to_domain(balance: Balance) -> BalanceData:
    """Convert ORM balance to domain model."""
    return BalanceData(
        user_id=balance.user_id,
        balance=balance.balance,
        total_earned=balance.total_earned,
        total_spent=balance.total_spent,
        created_at=balance.created_at,
        updated_at=balance.updated_at,
    )


def _transaction_to_domain(entry: Transaction) -> TransactionData:
    """Convert ORM transaction to domain model."""
    reference = (
        Reference(kind=ReferenceKind(entry.reference_type), reference_id=entry.reference_id)
        if entry.reference_type and entry.reference_id
        else None
    )
    return TransactionData(
        transaction_id=entry.id,
        user_id=entry.user_id,
        transaction_type=TransactionType(entry.transaction_type),
        amount=entry.amount,
        balance_after=entry.balance_after,
        description=entry.description,
        reference=reference,
        idempotency_key=entry.idempotency_key,
        created_at=entry.created_at,
    )
