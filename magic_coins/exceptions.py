"""
Exception Classes - Strongly typed exception hierarchy.

Business rejections (insufficient funds, invalid amounts) travel as typed
LedgerResult values. Exceptions are reserved for caller bugs at construction
time and for storage failures.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class InvalidAmountError(LedgerError, ValueError):
    """Raised when a coin amount is zero, negative or not an integer."""

    def __init__(self, amount: object) -> None:
        self.amount = amount
        super().__init__(f"Invalid coin amount: {amount!r}")


class PersistenceError(LedgerError):
    """Raised when a database operation fails; the outcome is unknown."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Persistence error during {operation}: {message}")


class WriteVerificationError(PersistenceError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        super().__init__("write_verification", message)


class DataIntegrityError(PersistenceError):
    """Raised when the stored ledger contradicts its own invariants."""

    def __init__(self, message: str) -> None:
        super().__init__("data_integrity", message)
