"""
Unit tests for the transaction log and period summaries.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from courtbook.core.ledger import CreditTransaction, TransactionKind, monthly_breakdown, summarize_month, summarize_year
from courtbook.core.ledger.history import month_bounds, newest_first
from courtbook.core.ledger.store import CREDIT_TRANSACTIONS, EARNING_TRANSACTIONS

from tests.support import COACH_ID, STUDENT_ID


def tx(kind: TransactionKind, amount: int, when: datetime, balance: int = 0) -> CreditTransaction:
    return CreditTransaction(user_id=STUDENT_ID, amount=amount, kind=kind, balance=balance, timestamp=when)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestTransactionLog:
    """Tests for listing ledger entries from the store."""

    async def test_listing_is_filtered_by_owner(self, ledger):
        await ledger.balances.add_credits(STUDENT_ID, 5)
        await ledger.balances.add_credits("someone-else", 5)

        transactions = await ledger.transactions.credit_transactions(STUDENT_ID)

        assert [t.user_id for t in transactions] == [STUDENT_ID]

    async def test_malformed_records_are_skipped(self, ledger, memory_store):
        """One bad record never hides the rest of the history."""
        await ledger.balances.add_credits(STUDENT_ID, 5)
        await memory_store.set(CREDIT_TRANSACTIONS, "bad", {"userId": STUDENT_ID, "type": "add"})

        transactions = await ledger.transactions.credit_transactions(STUDENT_ID)

        assert len(transactions) == 1
        assert transactions[0].amount == 5

    async def test_malformed_earnings_are_skipped(self, ledger, memory_store):
        await ledger.earnings.add_earnings(COACH_ID, 10)
        await memory_store.set(EARNING_TRANSACTIONS, "bad", {"coachId": COACH_ID, "amount": "ten", "id": "bad"})

        transactions = await ledger.transactions.earning_transactions(COACH_ID)

        assert [t.amount for t in transactions] == [10]

    def test_newest_first_sorts_by_timestamp(self):
        older = tx(TransactionKind.ADD, 1, utc(2025, 1, 1))
        newer = tx(TransactionKind.ADD, 2, utc(2025, 2, 1))

        assert newest_first([older, newer]) == [newer, older]


class TestSummaries:
    """Tests for earned/spent/net over a period."""

    def test_month_summary(self):
        transactions = [
            tx(TransactionKind.ADD, 50, utc(2025, 3, 1)),
            tx(TransactionKind.DEDUCT, 20, utc(2025, 3, 15)),
            tx(TransactionKind.DEDUCT, 5, utc(2025, 3, 31, 23, 59)),
            tx(TransactionKind.DEDUCT, 100, utc(2025, 4, 1)),
        ]

        summary = summarize_month(transactions, 2025, 3, timezone.utc)

        assert summary.earned == 50
        assert summary.spent == 25
        assert summary.net == 25
        assert summary.transaction_count == 3

    def test_month_bounds_follow_the_reference_timezone(self):
        """
        Given a deduction at 03:00 UTC on April 1st
        When months are cut in New York time
        Then it belongs to March
        """
        tz = ZoneInfo("America/New_York")
        transactions = [tx(TransactionKind.DEDUCT, 10, utc(2025, 4, 1, 3))]

        assert summarize_month(transactions, 2025, 3, tz).spent == 10
        assert summarize_month(transactions, 2025, 4, tz).spent == 0

    def test_december_rolls_over_to_next_year(self):
        start, end = month_bounds(2025, 12, timezone.utc)

        assert start == utc(2025, 12, 1)
        assert end == utc(2026, 1, 1)

    def test_year_summary_and_breakdown_agree(self):
        transactions = [
            tx(TransactionKind.ADD, 100, utc(2025, 1, 5)),
            tx(TransactionKind.DEDUCT, 30, utc(2025, 1, 20)),
            tx(TransactionKind.DEDUCT, 10, utc(2025, 6, 2)),
            tx(TransactionKind.ADD, 999, utc(2024, 12, 31)),
        ]

        year = summarize_year(transactions, 2025, timezone.utc)
        breakdown = monthly_breakdown(transactions, 2025, timezone.utc)

        assert (year.earned, year.spent, year.net) == (100, 40, 60)
        assert [month for month, _ in breakdown] == list(range(1, 13))
        assert breakdown[0][1].net == 70
        assert breakdown[5][1].spent == 10
        assert sum(summary.transaction_count for _, summary in breakdown) == year.transaction_count == 3

    def test_empty_history(self):
        summary = summarize_year([], 2025, timezone.utc)

        assert summary.net == 0
        assert summary.transaction_count == 0
