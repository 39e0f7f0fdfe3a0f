"""
Ledger Store - Durable storage of balances and the append-only transaction log.

No business rules beyond the schema invariants. Every balance mutation is a
single conditional statement executed by the database; nothing here reads a
balance, computes a new value in Python and writes it back. Methods never
commit: the transaction processor owns transaction boundaries.
"""

from dataclasses import dataclass

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from magic_coins.db.models import Balance, Transaction, utc_now
from magic_coins.db.statements import insert_for
from magic_coins.exceptions import InvalidAmountError, WriteVerificationError
from magic_coins.models.api import MAX_COIN_AMOUNT, TransactionType
from magic_coins.models.domain import Reference

SIGNUP_GRANT_DESCRIPTION = "Signup bonus"


@dataclass(frozen=True)
class LedgerTotals:
    """Aggregates over one user's transaction log."""

    ledger_sum: int
    credits_sum: int
    debits_sum: int
    transaction_count: int
    last_balance_after: int | None


class LedgerStore:
    """Storage and retrieval of Balance and Transaction rows for one session."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger store with database session."""
        self.session = session

    async def get_balance(self, user_id: str) -> Balance | None:
        """Fetch the balance row, bypassing any stale identity-map copy."""
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_balance_if_absent(self, user_id: str, initial_coins: int) -> bool:
        """
        Create the balance row unless one exists.

        Single INSERT ... ON CONFLICT DO NOTHING, so concurrent first-use calls
        create exactly one row. Returns True when this call created it.
        """
        stmt = (
            insert_for(self.session, Balance)
            .values(
                user_id=user_id,
                balance=initial_coins,
                total_earned=initial_coins,
                total_spent=0,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
            .returning(Balance.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def initialize_balance(
        self,
        user_id: str,
        initial_coins: int,
        description: str = SIGNUP_GRANT_DESCRIPTION,
    ) -> tuple[Balance, bool]:
        """
        Idempotently create a balance with a starting grant.

        An existing row is returned unchanged. A newly created row with a
        positive grant gets exactly one earn transaction.

        Raises:
            InvalidAmountError: initial_coins is negative, too large or not an integer
            WriteVerificationError: the row cannot be read back
        """
        if (
            isinstance(initial_coins, bool)
            or not isinstance(initial_coins, int)
            or not 0 <= initial_coins <= MAX_COIN_AMOUNT
        ):
            raise InvalidAmountError(initial_coins)

        created = await self.insert_balance_if_absent(user_id, initial_coins)
        if created and initial_coins > 0:
            await self.append_transaction(
                user_id=user_id,
                transaction_type=TransactionType.EARN,
                amount=initial_coins,
                balance_after=initial_coins,
                description=description,
            )

        balance = await self.get_balance(user_id)
        if balance is None:
            raise WriteVerificationError(f"Balance for {user_id} not found after insert")
        return balance, created

    async def debit(self, user_id: str, amount: int) -> int | None:
        """
        Compare-and-decrement the balance.

        Returns the new balance, or None when no row matched (no account, or
        balance < amount). The check and the write are one statement.
        """
        stmt = (
            update(Balance)
            .where(Balance.user_id == user_id, Balance.balance >= amount)
            .values(
                balance=Balance.balance - amount,
                total_spent=Balance.total_spent + amount,
                updated_at=utc_now(),
            )
            .returning(Balance.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def credit(self, user_id: str, amount: int) -> int | None:
        """
        Increment balance and total_earned.

        Returns the new balance, or None when no row matched (no account, or
        the credit would push a total past MAX_COIN_AMOUNT).
        """
        headroom = MAX_COIN_AMOUNT - amount
        stmt = (
            update(Balance)
            .where(
                Balance.user_id == user_id,
                Balance.balance <= headroom,
                Balance.total_earned <= headroom,
            )
            .values(
                balance=Balance.balance + amount,
                total_earned=Balance.total_earned + amount,
                updated_at=utc_now(),
            )
            .returning(Balance.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def append_transaction(
        self,
        user_id: str,
        transaction_type: TransactionType,
        amount: int,
        balance_after: int,
        description: str,
        reference: Reference | None = None,
        idempotency_key: str | None = None,
    ) -> Transaction:
        """
        Append one entry to the log.

        Raises:
            WriteVerificationError: the row did not receive an id on flush
        """
        entry = Transaction(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            description=description,
            reference_type=reference.kind if reference else None,
            reference_id=reference.reference_id if reference else None,
            idempotency_key=idempotency_key,
        )
        self.session.add(entry)
        await self.session.flush()

        if entry.id is None:
            raise WriteVerificationError(f"Transaction for {user_id} has no id after insert")
        return entry

    async def find_transaction_by_idempotency_key(
        self, user_id: str, idempotency_key: str
    ) -> Transaction | None:
        """Find a user's transaction by idempotency key."""
        stmt = select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.idempotency_key == idempotency_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_transactions(self, user_id: str, limit: int) -> list[Transaction]:
        """Newest-first page of a user's transactions."""
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def ledger_totals(self, user_id: str) -> LedgerTotals:
        """Sum the log for reconciliation."""
        totals_stmt = select(
            func.coalesce(func.sum(Transaction.amount), 0),
            func.coalesce(
                func.sum(case((Transaction.amount > 0, Transaction.amount), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((Transaction.amount < 0, -Transaction.amount), else_=0)), 0
            ),
            func.count(Transaction.id),
        ).where(Transaction.user_id == user_id)
        totals = (await self.session.execute(totals_stmt)).one()

        last_stmt = (
            select(Transaction.balance_after)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.id.desc())
            .limit(1)
        )
        last_balance_after = (await self.session.execute(last_stmt)).scalar_one_or_none()

        return LedgerTotals(
            ledger_sum=int(totals[0]),
            credits_sum=int(totals[1]),
            debits_sum=int(totals[2]),
            transaction_count=int(totals[3]),
            last_balance_after=last_balance_after,
        )
