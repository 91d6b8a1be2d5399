"""
Earnings manager: a coach's accrued credits.

Earnings are side accounting for the booking workflow. A slot that was
booked or finished stays booked or finished whether or not the coach's
total could be written, so accrual never raises. Failures are logged and
the accrual can be retried.

An accrual has two independent writes (the running total and the earning
transaction record). Each write is tracked on the EarningsAccrual so a
retry only repeats the step that failed and never adds the total twice.

EarningsDispatcher runs accruals as background tasks with bounded retries,
which keeps the primary operation's latency and outcome independent of
the earnings bookkeeping.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from .concurrency import KeyedLock
from .history import TransactionLog
from .models import EarningTransaction, utc_now
from .store import COACH_EARNINGS, EARNING_TRANSACTIONS, DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class EarningsAccrual:
    """One pending credit to a coach, with the progress of its writes."""
    coach_id: str
    amount: int
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    class_time: Optional[str] = None
    description: Optional[str] = None
    transaction_id: str = field(default_factory=lambda: str(uuid4()).upper())
    timestamp: Optional[datetime] = None
    total_applied: bool = False
    recorded: bool = False

    @property
    def complete(self) -> bool:
        return self.total_applied and self.recorded

    def to_transaction(self) -> EarningTransaction:
        return EarningTransaction(
            id=self.transaction_id,
            coach_id=self.coach_id,
            amount=self.amount,
            student_id=self.student_id,
            class_id=self.class_id,
            class_time=self.class_time,
            description=self.description,
            timestamp=self.timestamp or utc_now(),
        )


class EarningsManager:
    """Owns per-coach earnings totals and their transaction records."""

    def __init__(
        self,
        store: DocumentStore,
        transaction_log: TransactionLog,
        clock: Callable = utc_now,
    ) -> None:
        self._store = store
        self._log = transaction_log
        self._clock = clock
        self._locks = KeyedLock()
        self._cache: dict[str, int] = {}

    def cached_earnings(self, coach_id: str) -> Optional[int]:
        return self._cache.get(coach_id)

    async def get_earnings(self, coach_id: str) -> int:
        """Read the coach's total, initializing it to 0 if absent."""
        async with self._locks.hold(coach_id):
            total = await self._read_total(coach_id)
            if total is None:
                total = 0
                await self._store.set(COACH_EARNINGS, coach_id, {"totalEarnings": 0}, merge=True)
                logger.info("Initialized coach earnings", extra={"coach_id": coach_id})
            self._cache[coach_id] = total
            return total

    async def add_earnings(
        self,
        coach_id: str,
        amount: int,
        student_id: Optional[str] = None,
        class_id: Optional[str] = None,
        class_time: Optional[str] = None,
        description: Optional[str] = None,
    ) -> bool:
        """
        Credit a coach. Never raises.

        Returns True if both the total and the transaction record were
        written, False if anything failed (already logged).
        """
        accrual = EarningsAccrual(
            coach_id=coach_id,
            amount=amount,
            student_id=student_id,
            class_id=class_id,
            class_time=class_time,
            description=description,
        )
        return await self.apply(accrual)

    async def apply(self, accrual: EarningsAccrual) -> bool:
        """Run whichever writes of `accrual` haven't succeeded yet."""
        if not accrual.coach_id:
            logger.error("Earnings accrual without a coach id", extra={"class_id": accrual.class_id})
            return False
        if accrual.amount < 0:
            logger.error(
                "Refusing negative earnings accrual",
                extra={"coach_id": accrual.coach_id, "amount": accrual.amount}
            )
            return False
        if accrual.timestamp is None:
            accrual.timestamp = self._clock()

        async with self._locks.hold(accrual.coach_id):
            if not accrual.total_applied:
                await self._apply_total(accrual)
            if not accrual.recorded:
                await self._record(accrual)

        if accrual.complete:
            logger.info(
                "Coach earnings accrued",
                extra={
                    "coach_id": accrual.coach_id,
                    "amount": accrual.amount,
                    "class_id": accrual.class_id,
                }
            )
        return accrual.complete

    async def list_earning_transactions(self, coach_id: str) -> list[EarningTransaction]:
        """The coach's earning transactions, newest first."""
        return await self._log.earning_transactions(coach_id)

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    async def _read_total(self, coach_id: str) -> Optional[int]:
        data = await self._store.get(COACH_EARNINGS, coach_id)
        if not data:
            return None
        total = data.get("totalEarnings")
        if isinstance(total, int) and not isinstance(total, bool):
            return total
        return None

    async def _apply_total(self, accrual: EarningsAccrual) -> None:
        try:
            current = await self._read_total(accrual.coach_id) or 0
            new_total = current + accrual.amount
            await self._store.set(
                COACH_EARNINGS,
                accrual.coach_id,
                {"totalEarnings": new_total, "lastUpdated": accrual.timestamp},
                merge=True,
            )
        except Exception as e:
            logger.error(
                "Failed to update coach earnings total",
                extra={"coach_id": accrual.coach_id, "error": str(e)}
            )
            return

        accrual.total_applied = True
        self._cache[accrual.coach_id] = new_total

    async def _record(self, accrual: EarningsAccrual) -> None:
        transaction = accrual.to_transaction()
        try:
            await self._store.set(
                EARNING_TRANSACTIONS,
                transaction.id,
                transaction.to_document(),
            )
        except Exception as e:
            logger.error(
                "Failed to record earning transaction",
                extra={"coach_id": accrual.coach_id, "error": str(e)}
            )
            return

        accrual.recorded = True


class EarningsDispatcher:
    """
    Runs earnings accruals in the background.

    `dispatch` returns immediately; the accrual is retried up to
    `attempts` times with `retry_delay` seconds between attempts. Accruals
    still incomplete after the last attempt are logged and dropped.
    """

    def __init__(
        self,
        earnings: EarningsManager,
        attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._earnings = earnings
        self._attempts = attempts
        self._retry_delay = retry_delay
        self._pending: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def dispatch(self, accrual: EarningsAccrual) -> asyncio.Task:
        """Schedule an accrual on the running event loop."""
        task = asyncio.get_running_loop().create_task(self._run(accrual))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait until every dispatched accrual has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _run(self, accrual: EarningsAccrual) -> bool:
        for attempt in range(1, self._attempts + 1):
            if await self._earnings.apply(accrual):
                return True

            if attempt < self._attempts:
                logger.warning(
                    "Retrying earnings accrual",
                    extra={
                        "coach_id": accrual.coach_id,
                        "class_id": accrual.class_id,
                        "attempt": attempt,
                    }
                )
                await asyncio.sleep(self._retry_delay)

        logger.error(
            "Giving up on earnings accrual",
            extra={
                "coach_id": accrual.coach_id,
                "class_id": accrual.class_id,
                "amount": accrual.amount,
                "attempts": self._attempts,
            }
        )
        return False
