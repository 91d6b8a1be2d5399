"""
Balance manager: a user's credit balance.

Every balance change is a read-compute-write against the store followed by
an append to the credit transaction log carrying the resulting balance.
The stored value is always re-read before writing (the local cache is
for observers, never for arithmetic), and updates for the same user are
serialized through a per-user lock.

Flow for a deduction:
1. Read the stored balance (initializing it to the default if absent)
2. Reject if the balance can't cover the amount
3. Write the new balance
4. Append the transaction record
5. Update the cache and notify subscribers
"""

import logging
from typing import Callable, Optional

from .concurrency import KeyedLock
from .errors import InsufficientBalanceError, PersistenceError
from .history import TransactionLog
from .models import CreditTransaction, TransactionKind, utc_now
from .roles import require_identity
from .store import CREDIT_TRANSACTIONS, USERS, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_STARTING_CREDITS = 100

BalanceListener = Callable[[str, int], None]


def _validate_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValueError("Credit amount must be an integer")
    if amount < 0:
        raise ValueError("Credit amount cannot be negative")


def _stored_credits(data: Optional[dict]) -> Optional[int]:
    if not data:
        return None
    credits = data.get("credits")
    if isinstance(credits, int) and not isinstance(credits, bool):
        return credits
    return None


class BalanceManager:
    """
    Owns per-user credit balances.

    Errors propagate: a failed deduction or a store failure reaches the
    caller as a typed LedgerError and leaves the stored balance unchanged.
    """

    def __init__(
        self,
        store: DocumentStore,
        transaction_log: TransactionLog,
        default_balance: int = DEFAULT_STARTING_CREDITS,
        clock: Callable = utc_now,
    ) -> None:
        self._store = store
        self._log = transaction_log
        self._default_balance = default_balance
        self._clock = clock
        self._locks = KeyedLock()
        self._cache: dict[str, int] = {}
        self._listeners: list[BalanceListener] = []

    # -----------------------------------------------------------------------
    # Observation
    # -----------------------------------------------------------------------

    def cached_balance(self, user_id: str) -> Optional[int]:
        """Last balance this manager read or wrote for the user."""
        return self._cache.get(user_id)

    def subscribe(self, listener: BalanceListener) -> Callable[[], None]:
        """Call `listener(user_id, balance)` after every balance change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, user_id: str, balance: int) -> None:
        self._cache[user_id] = balance
        for listener in list(self._listeners):
            try:
                listener(user_id, balance)
            except Exception:
                logger.exception("Balance listener failed", extra={"user_id": user_id})

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def get_balance(self, user_id: Optional[str]) -> int:
        """
        Read the user's balance, initializing it to the default if absent.

        Initialization runs under the user's lock, so concurrent first reads
        in this process write the default once. Across processes the default
        is a constant, so a repeated write is harmless.
        """
        user_id = require_identity(user_id)
        async with self._locks.hold(user_id):
            return await self._read_or_initialize(user_id)

    async def add_credits(self, user_id: Optional[str], amount: int) -> int:
        """Add credits and return the new balance."""
        return await self._apply(user_id, amount, TransactionKind.ADD)

    async def deduct_credits(self, user_id: Optional[str], amount: int) -> int:
        """
        Deduct credits and return the new balance.

        Raises InsufficientBalanceError (balance untouched) if the current
        balance is below `amount`. There are no partial deductions.
        """
        return await self._apply(user_id, amount, TransactionKind.DEDUCT)

    async def list_transactions(self, user_id: Optional[str]) -> list[CreditTransaction]:
        """All of the user's credit transactions, newest first."""
        user_id = require_identity(user_id)
        return await self._log.credit_transactions(user_id)

    async def setup_new_user(self, user_id: str, is_student: bool) -> bool:
        """
        Seed starting credits for a freshly created account.

        Only students receive credits, and only when their profile document
        exists without a balance. Returns True if credits were seeded.
        """
        user_id = require_identity(user_id)
        if not is_student:
            return False

        async with self._locks.hold(user_id):
            data = await self._store.get(USERS, user_id)
            if data is None or "credits" in data:
                return False

            await self._store.set(USERS, user_id, {"credits": self._default_balance}, merge=True)
            self._publish(user_id, self._default_balance)

        logger.info(
            "Seeded starting credits for new student",
            extra={"user_id": user_id, "credits": self._default_balance}
        )
        return True

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    async def _read_or_initialize(self, user_id: str) -> int:
        data = await self._store.get(USERS, user_id)
        credits = _stored_credits(data)

        if credits is None:
            credits = self._default_balance
            await self._store.set(USERS, user_id, {"credits": credits}, merge=True)
            logger.info(
                "Initialized balance",
                extra={"user_id": user_id, "credits": credits}
            )

        if self._cache.get(user_id) != credits:
            self._publish(user_id, credits)
        return credits

    async def _apply(
        self,
        user_id: Optional[str],
        amount: int,
        kind: TransactionKind,
    ) -> int:
        user_id = require_identity(user_id)
        _validate_amount(amount)

        async with self._locks.hold(user_id):
            current = await self._read_or_initialize(user_id)

            if kind == TransactionKind.DEDUCT:
                if current < amount:
                    logger.warning(
                        "Insufficient balance for deduction",
                        extra={"user_id": user_id, "balance": current, "amount": amount}
                    )
                    raise InsufficientBalanceError(user_id, current, amount)
                new_balance = current - amount
            else:
                new_balance = current + amount

            await self._store.update(USERS, user_id, {"credits": new_balance})

            transaction = CreditTransaction(
                user_id=user_id,
                amount=amount,
                kind=kind,
                balance=new_balance,
                timestamp=self._clock(),
            )
            try:
                await self._store.set(
                    CREDIT_TRANSACTIONS,
                    transaction.id,
                    transaction.to_document(),
                )
            except PersistenceError:
                # A balance change without its ledger entry is not allowed;
                # put the old balance back before reporting the failure.
                logger.error(
                    "Failed to record credit transaction, restoring balance",
                    extra={"user_id": user_id, "balance": current}
                )
                try:
                    await self._store.update(USERS, user_id, {"credits": current})
                except PersistenceError as restore_error:
                    logger.critical(
                        "Balance changed without a ledger entry, restore failed",
                        extra={
                            "user_id": user_id,
                            "balance_before": current,
                            "balance_stored": new_balance,
                            "error": str(restore_error),
                        }
                    )
                raise

            self._publish(user_id, new_balance)

        logger.info(
            "Balance updated",
            extra={
                "user_id": user_id,
                "kind": kind.value,
                "amount": amount,
                "balance": new_balance,
            }
        )
        return new_balance
