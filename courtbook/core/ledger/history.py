"""
Transaction log: the read model over ledger entries.

There is no state here. Entries are filtered by owner in the store query,
parsed one by one (a record that doesn't parse is logged and skipped, never
fatal to the whole listing), and sorted newest first on the client because
the store cannot always combine an equality filter with ordering.

Period summaries (earned / spent / net per month or year) are computed
from the same listing.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable, Iterable, Sequence, TypeVar

from .models import CreditTransaction, EarningTransaction, LedgerSummary
from .store import CREDIT_TRANSACTIONS, EARNING_TRANSACTIONS, Document, DocumentStore, FieldFilter

logger = logging.getLogger(__name__)

T = TypeVar("T", CreditTransaction, EarningTransaction)


def newest_first(records: Iterable[T]) -> list[T]:
    return sorted(records, key=lambda r: r.timestamp, reverse=True)


def _parse_all(
    documents: Sequence[Document],
    parse: Callable[[dict], T],
    kind: str,
) -> list[T]:
    parsed = []
    for doc in documents:
        try:
            parsed.append(parse(doc.data))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Skipping malformed ledger record",
                extra={"kind": kind, "document_id": doc.id, "error": str(e)}
            )
    return parsed


class TransactionLog:
    """Queries over credit and earning transactions."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def credit_transactions(self, user_id: str) -> list[CreditTransaction]:
        documents = await self._store.query(
            CREDIT_TRANSACTIONS,
            [FieldFilter("userId", user_id)],
        )
        records = _parse_all(documents, CreditTransaction.from_document, "credit")
        return newest_first(records)

    async def earning_transactions(self, coach_id: str) -> list[EarningTransaction]:
        documents = await self._store.query(
            EARNING_TRANSACTIONS,
            [FieldFilter("coachId", coach_id)],
        )
        records = _parse_all(documents, EarningTransaction.from_document, "earning")
        return newest_first(records)


# ---------------------------------------------------------------------------
# Period Summaries
# ---------------------------------------------------------------------------

def summarize(
    transactions: Iterable[CreditTransaction],
    start: datetime,
    end: datetime,
) -> LedgerSummary:
    """Summarize transactions with start <= timestamp < end."""
    earned = spent = count = 0
    for tx in transactions:
        if not (start <= tx.timestamp < end):
            continue
        count += 1
        if tx.signed_amount > 0:
            earned += tx.signed_amount
        else:
            spent += -tx.signed_amount
    return LedgerSummary(earned=earned, spent=spent, transaction_count=count)


def month_bounds(year: int, month: int, tz: tzinfo) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def summarize_month(
    transactions: Iterable[CreditTransaction],
    year: int,
    month: int,
    tz: tzinfo,
) -> LedgerSummary:
    start, end = month_bounds(year, month, tz)
    return summarize(transactions, start, end)


def summarize_year(
    transactions: Iterable[CreditTransaction],
    year: int,
    tz: tzinfo,
) -> LedgerSummary:
    start = datetime(year, 1, 1, tzinfo=tz).astimezone(timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=tz).astimezone(timezone.utc)
    return summarize(transactions, start, end)


def monthly_breakdown(
    transactions: Iterable[CreditTransaction],
    year: int,
    tz: tzinfo,
) -> list[tuple[int, LedgerSummary]]:
    """One (month number, summary) pair for each month of the year."""
    records = list(transactions)
    return [
        (month, summarize_month(records, year, month, tz))
        for month in range(1, 13)
    ]
