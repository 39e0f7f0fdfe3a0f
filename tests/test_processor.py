"""
Tests for TransactionProcessor.

Unit tests for spend/earn outcomes, idempotency and persistence failures.
Storage calls are patched on the processor's LedgerStore.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from magic_coins.exceptions import PersistenceError, WriteVerificationError
from magic_coins.models.api import (
    MAX_COIN_AMOUNT,
    LedgerErrorCode,
    ReferenceKind,
    TransactionType,
)
from magic_coins.models.domain import Reference
from magic_coins.services.ledger_store import LedgerTotals
from magic_coins.services.processor import TransactionProcessor, clamp_limit
from tests.factories import create_mock_balance, create_mock_transaction


class TestSpend:
    """Tests for spend."""

    async def test_spend_success_appends_debit(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """Successful spend: new balance, negative entry, one commit."""
        entry = create_mock_transaction(
            transaction_id=2,
            transaction_type=TransactionType.SPEND,
            amount=-3,
            balance_after=7,
            description="image generation",
        )
        with (
            patch.object(processor.store, "debit", AsyncMock(return_value=7)) as debit,
            patch.object(
                processor.store, "append_transaction", AsyncMock(return_value=entry)
            ) as append,
        ):
            result = await processor.spend("user-123", 3, "image generation")

        assert result.success is True
        assert result.balance == 7
        assert result.transaction is not None
        assert result.transaction.amount == -3
        debit.assert_awaited_once_with("user-123", 3)
        assert append.await_args.kwargs["amount"] == -3
        assert append.await_args.kwargs["balance_after"] == 7
        assert append.await_args.kwargs["transaction_type"] == TransactionType.SPEND
        db_session.commit.assert_awaited_once()

    async def test_spend_passes_reference(self, processor: TransactionProcessor) -> None:
        """The causing event is recorded on the entry."""
        reference = Reference(ReferenceKind.GENERATION_VIDEO, "gen-9")
        entry = create_mock_transaction(
            transaction_type=TransactionType.SPEND,
            amount=-5,
            balance_after=5,
            reference_type=ReferenceKind.GENERATION_VIDEO,
            reference_id="gen-9",
        )
        processor.store.debit = AsyncMock(return_value=5)
        processor.store.append_transaction = AsyncMock(return_value=entry)

        result = await processor.spend("user-123", 5, "video generation", reference)

        assert processor.store.append_transaction.await_args.kwargs["reference"] == reference
        assert result.transaction.reference == reference

    async def test_spend_insufficient_funds(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """No matched row with an existing balance: InsufficientFunds, nothing written."""
        processor.store.debit = AsyncMock(return_value=None)
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=7, total_earned=10, total_spent=3)
        )
        processor.store.append_transaction = AsyncMock()

        result = await processor.spend("user-123", 100, "video generation")

        assert result.success is False
        assert result.error == LedgerErrorCode.INSUFFICIENT_FUNDS
        assert result.balance == 7
        processor.store.append_transaction.assert_not_awaited()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_spend_account_not_found(self, processor: TransactionProcessor) -> None:
        """No matched row and no balance row: AccountNotFound."""
        processor.store.debit = AsyncMock(return_value=None)
        processor.store.get_balance = AsyncMock(return_value=None)

        result = await processor.spend("ghost", 1, "image generation")

        assert result.success is False
        assert result.error == LedgerErrorCode.ACCOUNT_NOT_FOUND
        assert result.balance is None

    @pytest.mark.parametrize("amount", [0, -5, True, 1.5])
    async def test_spend_invalid_amount(
        self, processor: TransactionProcessor, db_session: AsyncMock, amount: object
    ) -> None:
        """Non-positive or non-integer amounts fail before touching the database."""
        result = await processor.spend("user-123", amount, "image")  # type: ignore[arg-type]

        assert result.success is False
        assert result.error == LedgerErrorCode.INVALID_AMOUNT
        db_session.execute.assert_not_awaited()

    async def test_spend_database_error_raises_persistence_error(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """Storage failures roll back and surface as PersistenceError."""
        processor.store.debit = AsyncMock(
            side_effect=OperationalError("UPDATE balances", {}, Exception("connection lost"))
        )

        with pytest.raises(PersistenceError) as exc_info:
            await processor.spend("user-123", 3, "image generation")

        assert exc_info.value.operation == "spend"
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_spend_verification_failure_rolls_back(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """A failed log append undoes the debit."""
        processor.store.debit = AsyncMock(return_value=7)
        processor.store.append_transaction = AsyncMock(
            side_effect=WriteVerificationError("no id")
        )

        with pytest.raises(WriteVerificationError):
            await processor.spend("user-123", 3, "image generation")

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()


class TestEarn:
    """Tests for earn."""

    async def test_earn_creates_missing_balance_and_credits(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """Lazy initialization with zero coins, then the credit."""
        entry = create_mock_transaction(
            transaction_type=TransactionType.PURCHASE, amount=20, balance_after=20
        )
        processor.store.insert_balance_if_absent = AsyncMock(return_value=True)
        processor.store.credit = AsyncMock(return_value=20)
        processor.store.append_transaction = AsyncMock(return_value=entry)

        result = await processor.earn(
            "user-123", 20, "purchase", transaction_type=TransactionType.PURCHASE
        )

        assert result.success is True
        assert result.balance == 20
        assert result.duplicate is False
        processor.store.insert_balance_if_absent.assert_awaited_once_with("user-123", 0)
        processor.store.credit.assert_awaited_once_with("user-123", 20)
        db_session.commit.assert_awaited_once()

    async def test_earn_without_create_reports_missing_account(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """create_if_missing=False and no row: AccountNotFound, rolled back."""
        processor.store.insert_balance_if_absent = AsyncMock()
        processor.store.credit = AsyncMock(return_value=None)
        processor.store.get_balance = AsyncMock(return_value=None)

        result = await processor.earn("ghost", 5, "bonus", create_if_missing=False)

        assert result.success is False
        assert result.error == LedgerErrorCode.ACCOUNT_NOT_FOUND
        processor.store.insert_balance_if_absent.assert_not_awaited()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_earn_past_maximum_balance_is_invalid_amount(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """A credit that would overflow the balance columns is rejected, not raised."""
        processor.store.insert_balance_if_absent = AsyncMock(return_value=False)
        processor.store.credit = AsyncMock(return_value=None)
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(
                balance=MAX_COIN_AMOUNT, total_earned=MAX_COIN_AMOUNT
            )
        )
        processor.store.append_transaction = AsyncMock()

        result = await processor.earn("user-123", 1, "bonus")

        assert result.success is False
        assert result.error == LedgerErrorCode.INVALID_AMOUNT
        assert result.balance == MAX_COIN_AMOUNT
        processor.store.append_transaction.assert_not_awaited()
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    @pytest.mark.parametrize("amount", [0, -1, MAX_COIN_AMOUNT + 1])
    async def test_earn_invalid_amount(
        self, processor: TransactionProcessor, db_session: AsyncMock, amount: int
    ) -> None:
        """Non-positive credits are rejected as results."""
        result = await processor.earn("user-123", amount, "bonus")

        assert result.error == LedgerErrorCode.INVALID_AMOUNT
        db_session.execute.assert_not_awaited()

    async def test_earn_rejects_spend_type(self, processor: TransactionProcessor) -> None:
        """Debits cannot be booked through earn."""
        with pytest.raises(ValueError, match="not a credit type"):
            await processor.earn("user-123", 5, "oops", transaction_type=TransactionType.SPEND)

    async def test_earn_duplicate_key_returns_original(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """A replayed idempotency key changes nothing and reports duplicate."""
        existing = create_mock_transaction(
            transaction_id=5,
            transaction_type=TransactionType.PURCHASE,
            amount=110,
            balance_after=110,
            idempotency_key="purchase:p-1",
        )
        processor.store.find_transaction_by_idempotency_key = AsyncMock(return_value=existing)
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=100, total_earned=110, total_spent=10)
        )
        processor.store.credit = AsyncMock()

        result = await processor.earn(
            "user-123",
            110,
            "Purchased Starter",
            transaction_type=TransactionType.PURCHASE,
            idempotency_key="purchase:p-1",
        )

        assert result.success is True
        assert result.duplicate is True
        assert result.balance == 100
        assert result.transaction.transaction_id == 5
        processor.store.credit.assert_not_awaited()
        db_session.commit.assert_not_awaited()

    async def test_earn_race_on_key_resolves_to_duplicate(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """Losing the unique-key race rolls back and returns the winner's entry."""
        winner = create_mock_transaction(
            transaction_id=9, amount=50, balance_after=50, idempotency_key="k-1"
        )
        processor.store.find_transaction_by_idempotency_key = AsyncMock(
            side_effect=[None, winner]
        )
        processor.store.insert_balance_if_absent = AsyncMock(return_value=False)
        processor.store.credit = AsyncMock(return_value=100)
        processor.store.append_transaction = AsyncMock(
            side_effect=IntegrityError("INSERT INTO transactions", {}, Exception("unique"))
        )
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=50, total_earned=50)
        )

        result = await processor.earn("user-123", 50, "grant", idempotency_key="k-1")

        assert result.success is True
        assert result.duplicate is True
        assert result.balance == 50
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_earn_integrity_error_without_key_is_persistence_error(
        self, processor: TransactionProcessor
    ) -> None:
        """Without an idempotency key an IntegrityError is a storage failure."""
        processor.store.insert_balance_if_absent = AsyncMock(return_value=False)
        processor.store.credit = AsyncMock(
            side_effect=IntegrityError("UPDATE balances", {}, Exception("check"))
        )

        with pytest.raises(PersistenceError):
            await processor.earn("user-123", 5, "bonus")


class TestFindDuplicate:
    """Tests for find_duplicate."""

    async def test_booked_key_replays_original(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """A key already in the log comes back as a duplicate with the live balance."""
        existing = create_mock_transaction(
            transaction_id=4,
            transaction_type=TransactionType.PURCHASE,
            amount=110,
            balance_after=110,
            idempotency_key="purchase:p-1",
        )
        processor.store.find_transaction_by_idempotency_key = AsyncMock(return_value=existing)
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=95, total_earned=110, total_spent=15)
        )

        result = await processor.find_duplicate("user-123", "purchase:p-1")

        assert result is not None
        assert result.duplicate is True
        assert result.balance == 95
        assert result.transaction.transaction_id == 4
        processor.store.find_transaction_by_idempotency_key.assert_awaited_once_with(
            "user-123", "purchase:p-1"
        )
        db_session.commit.assert_not_awaited()

    async def test_unknown_key_returns_none(self, processor: TransactionProcessor) -> None:
        processor.store.find_transaction_by_idempotency_key = AsyncMock(return_value=None)

        assert await processor.find_duplicate("user-123", "purchase:p-2") is None

    async def test_read_failure_raises_persistence_error(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        processor.store.find_transaction_by_idempotency_key = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("down"))
        )

        with pytest.raises(PersistenceError):
            await processor.find_duplicate("user-123", "purchase:p-1")

        db_session.rollback.assert_awaited_once()


class TestSubscriptionGrant:
    """Tests for monthly subscription grants."""

    async def test_grant_uses_monthly_key_and_counts_coins(
        self, processor: TransactionProcessor
    ) -> None:
        """One key per subscription and month; coins_granted updated in the same unit."""
        entry = create_mock_transaction(
            transaction_type=TransactionType.SUBSCRIPTION_GRANT, amount=200, balance_after=200
        )
        processor.store.find_transaction_by_idempotency_key = AsyncMock(return_value=None)
        processor.store.insert_balance_if_absent = AsyncMock(return_value=False)
        processor.store.credit = AsyncMock(return_value=200)
        processor.store.append_transaction = AsyncMock(return_value=entry)
        processor.usage.add_counts = AsyncMock()

        result = await processor.grant_subscription_coins("user-123", "sub-1", 200, "2026-10")

        assert result.success is True
        kwargs = processor.store.append_transaction.await_args.kwargs
        assert kwargs["idempotency_key"] == "subscription:sub-1:2026-10"
        assert kwargs["transaction_type"] == TransactionType.SUBSCRIPTION_GRANT
        assert kwargs["reference"] == Reference(ReferenceKind.SUBSCRIPTION_GRANT, "sub-1")
        processor.usage.add_counts.assert_awaited_once_with("user-123", "2026-10", coins=200)

    async def test_grant_invalid_month_rejected(self, processor: TransactionProcessor) -> None:
        """year_month must be YYYY-MM."""
        with pytest.raises(ValueError):
            await processor.grant_subscription_coins("user-123", "sub-1", 200, "2026-13")

    async def test_grant_invalid_coins(self, processor: TransactionProcessor) -> None:
        """Zero coins is an invalid amount result."""
        result = await processor.grant_subscription_coins("user-123", "sub-1", 0, "2026-10")

        assert result.error == LedgerErrorCode.INVALID_AMOUNT


class TestInitializeBalance:
    """Tests for initialize_balance."""

    async def test_initialize_commits_and_returns_domain(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """Created balances are committed and converted."""
        processor.store.initialize_balance = AsyncMock(
            return_value=(create_mock_balance(balance=10, total_earned=10), True)
        )

        balance = await processor.initialize_balance("user-123", 10)

        assert balance.balance == 10
        assert balance.total_earned == 10
        db_session.commit.assert_awaited_once()

    async def test_initialize_rejects_empty_user(self, processor: TransactionProcessor) -> None:
        """Empty user ids are caller bugs."""
        with pytest.raises(ValueError):
            await processor.initialize_balance("", 10)


class TestReads:
    """Tests for read operations."""

    async def test_get_balance_missing(self, processor: TransactionProcessor) -> None:
        """Missing rows come back as None."""
        processor.store.get_balance = AsyncMock(return_value=None)

        assert await processor.get_balance("ghost") is None

    async def test_can_afford(self, processor: TransactionProcessor) -> None:
        """Advisory check compares the stored balance."""
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=7, total_earned=10, total_spent=3)
        )

        assert await processor.can_afford("user-123", 7) is True
        assert await processor.can_afford("user-123", 8) is False

    async def test_can_afford_invalid_or_missing(self, processor: TransactionProcessor) -> None:
        """Invalid amounts and missing balances cannot afford anything."""
        processor.store.get_balance = AsyncMock(return_value=None)

        assert await processor.can_afford("user-123", 0) is False
        assert await processor.can_afford("ghost", 1) is False

    async def test_get_transactions_clamps_limit(self, processor: TransactionProcessor) -> None:
        """Oversized pages are clamped to the maximum."""
        processor.store.list_transactions = AsyncMock(return_value=[])

        await processor.get_transactions("user-123", 10_000)

        processor.store.list_transactions.assert_awaited_once_with("user-123", clamp_limit(10_000))

    def test_clamp_limit_bounds(self) -> None:
        """Default, floor and ceiling of the page size."""
        from magic_coins.config import settings

        assert clamp_limit(None) == settings.default_transaction_limit
        assert clamp_limit(0) == 1
        assert clamp_limit(10_000) == settings.max_transaction_limit

    async def test_reconcile_consistent(self, processor: TransactionProcessor) -> None:
        """Balance row and log agree."""
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=7, total_earned=10, total_spent=3)
        )
        processor.store.ledger_totals = AsyncMock(
            return_value=LedgerTotals(
                ledger_sum=7,
                credits_sum=10,
                debits_sum=3,
                transaction_count=2,
                last_balance_after=7,
            )
        )

        report = await processor.reconcile("user-123")

        assert report is not None
        assert report.consistent is True

    async def test_reconcile_detects_drift(self, processor: TransactionProcessor) -> None:
        """A log that does not sum to the balance is reported."""
        processor.store.get_balance = AsyncMock(
            return_value=create_mock_balance(balance=7, total_earned=10, total_spent=3)
        )
        processor.store.ledger_totals = AsyncMock(
            return_value=LedgerTotals(
                ledger_sum=10,
                credits_sum=10,
                debits_sum=0,
                transaction_count=1,
                last_balance_after=10,
            )
        )

        report = await processor.reconcile("user-123")

        assert report.consistent is False

    async def test_reconcile_missing_balance(self, processor: TransactionProcessor) -> None:
        """No balance row, nothing to reconcile."""
        processor.store.get_balance = AsyncMock(return_value=None)

        assert await processor.reconcile("ghost") is None

    async def test_read_failure_is_persistence_error(
        self, processor: TransactionProcessor, db_session: AsyncMock
    ) -> None:
        """Read failures surface as PersistenceError too."""
        processor.store.get_balance = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("timeout"))
        )

        with pytest.raises(PersistenceError):
            await processor.get_balance("user-123")
        db_session.rollback.assert_awaited_once()


def test_processor_shares_session_with_store_and_usage() -> None:
    """Store and usage tracker work inside the processor's transaction."""
    session = MagicMock()
    processor = TransactionProcessor(session)

    assert processor.store.session is session
    assert processor.usage.session is session
