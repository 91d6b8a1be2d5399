"""
Credit ledger and class booking.

Contains the domain models, the balance/earnings managers, the class
registry and the document store protocol they run against.
"""

from .balance import BalanceManager, DEFAULT_STARTING_CREDITS
from .classes import ClassRegistry
from .earnings import EarningsAccrual, EarningsDispatcher, EarningsManager
from .errors import (
    AuthorizationError,
    IdentityError,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerError,
    NotAvailableError,
    NotFoundError,
    PersistenceError,
)
from .history import TransactionLog, monthly_breakdown, summarize_month, summarize_year
from .models import (
    BookingRecord,
    ClassSlot,
    ClassStatus,
    CreditTransaction,
    EarningsAccrualPoint,
    EarningTransaction,
    LedgerSummary,
    Role,
    TransactionKind,
    UserProfile,
)
from .roles import ProfileDirectory, RoleGate
from .service import Ledger, build_ledger
from .store import DocumentStore, Document, FieldFilter

__all__ = [
    "AuthorizationError",
    "BalanceManager",
    "BookingRecord",
    "ClassRegistry",
    "ClassSlot",
    "ClassStatus",
    "CreditTransaction",
    "DEFAULT_STARTING_CREDITS",
    "Document",
    "DocumentStore",
    "EarningTransaction",
    "EarningsAccrual",
    "EarningsAccrualPoint",
    "EarningsDispatcher",
    "EarningsManager",
    "FieldFilter",
    "IdentityError",
    "InsufficientBalanceError",
    "InvalidStateError",
    "Ledger",
    "LedgerError",
    "LedgerSummary",
    "NotAvailableError",
    "NotFoundError",
    "PersistenceError",
    "ProfileDirectory",
    "Role",
    "RoleGate",
    "TransactionKind",
    "TransactionLog",
    "UserProfile",
    "build_ledger",
    "monthly_breakdown",
    "summarize_month",
    "summarize_year",
]
