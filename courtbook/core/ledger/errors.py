"""
Ledger exception hierarchy.

Every failure the ledger surfaces to callers derives from LedgerError so the
API layer can translate them in one place. Earnings accrual is the one path
that never lets these escape (see earnings.py).
"""


class LedgerError(Exception):
    """Base class for ledger and booking failures."""
    pass


class IdentityError(LedgerError):
    """Raised when an operation needs an acting identity and none was given."""
    pass


class InsufficientBalanceError(LedgerError):
    """Raised when a deduction exceeds the user's current balance."""

    def __init__(self, user_id: str, balance: int, requested: int) -> None:
        super().__init__(
            f"Insufficient credits: balance {balance}, requested {requested}"
        )
        self.user_id = user_id
        self.balance = balance
        self.requested = requested


class NotAvailableError(LedgerError):
    """Raised when booking a slot that is not available."""
    pass


class InvalidStateError(LedgerError):
    """Raised when a slot state transition's precondition is violated."""
    pass


class AuthorizationError(LedgerError):
    """Raised when the actor lacks the required role or ownership."""
    pass


class NotFoundError(LedgerError):
    """Raised when a requested slot doesn't exist."""
    pass


class PersistenceError(LedgerError):
    """Raised when the backing document store fails."""
    pass
