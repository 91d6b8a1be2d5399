"""
Wiring for the ledger components.

The managers depend on each other in one direction only:

    ClassRegistry -> BalanceManager, EarningsDispatcher, RoleGate
    BalanceManager / EarningsManager -> TransactionLog
    everything -> DocumentStore

build_ledger assembles that graph over a single store so the API layer,
scripts and tests all get the same object graph.
"""

import logging
from dataclasses import dataclass
from datetime import timezone, tzinfo
from typing import Callable

from .balance import DEFAULT_STARTING_CREDITS, BalanceManager
from .classes import ClassRegistry
from .earnings import EarningsDispatcher, EarningsManager
from .history import TransactionLog
from .models import EarningsAccrualPoint, utc_now
from .roles import ProfileDirectory, RoleGate
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """The assembled ledger components sharing one document store."""
    store: DocumentStore
    profiles: ProfileDirectory
    role_gate: RoleGate
    transactions: TransactionLog
    balances: BalanceManager
    earnings: EarningsManager
    dispatcher: EarningsDispatcher
    registry: ClassRegistry
    tz: tzinfo = timezone.utc

    async def start(self) -> None:
        await self.registry.start()
        logger.info(
            "Ledger started",
            extra={"class_count": len(self.registry.classes)}
        )

    async def shutdown(self) -> None:
        """Stop following the store and let pending earnings finish."""
        self.registry.stop()
        pending = self.dispatcher.pending_count
        await self.dispatcher.drain()
        logger.info("Ledger stopped", extra={"drained_accruals": pending})


def build_ledger(
    store: DocumentStore,
    default_balance: int = DEFAULT_STARTING_CREDITS,
    tz: tzinfo = timezone.utc,
    accrual_point: EarningsAccrualPoint = EarningsAccrualPoint.FINISH,
    earnings_retry_attempts: int = 3,
    earnings_retry_delay: float = 0.5,
    clock: Callable = utc_now,
) -> Ledger:
    profiles = ProfileDirectory(store)
    role_gate = RoleGate(profiles)
    transactions = TransactionLog(store)
    balances = BalanceManager(store, transactions, default_balance=default_balance, clock=clock)
    earnings = EarningsManager(store, transactions, clock=clock)
    dispatcher = EarningsDispatcher(
        earnings,
        attempts=earnings_retry_attempts,
        retry_delay=earnings_retry_delay,
    )
    registry = ClassRegistry(
        store,
        balances=balances,
        earnings=dispatcher,
        role_gate=role_gate,
        profiles=profiles,
        tz=tz,
        accrual_point=accrual_point,
        clock=clock,
    )

    return Ledger(
        store=store,
        profiles=profiles,
        role_gate=role_gate,
        transactions=transactions,
        balances=balances,
        earnings=earnings,
        dispatcher=dispatcher,
        registry=registry,
        tz=tz,
    )
