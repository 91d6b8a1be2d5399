"""
Credit balance API endpoints.

All endpoints act on the calling user's own balance (X-User-Id). A first
read of a user without a stored balance initializes it to the configured
starting credits.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from ...core.ledger import CreditTransaction, LedgerSummary, monthly_breakdown, summarize_month, summarize_year
from ..dependencies import ActingUserId, AuthenticatedUser, LedgerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class CreditAmountRequest(BaseModel):
    """Amount of credits to add or deduct."""
    amount: int = Field(
        description="Number of credits",
        ge=0,
    )


class BalanceResponse(BaseModel):
    """A user's current balance."""
    user_id: str = Field(description="User identifier")
    balance: int = Field(description="Credits available")


class TransactionItem(BaseModel):
    """One credit transaction."""
    id: str
    type: str = Field(description="'add' or 'deduct'")
    amount: int = Field(description="Magnitude of the change")
    signed_amount: int = Field(description="Change with its sign")
    balance: int = Field(description="Balance right after this transaction")
    timestamp: datetime

    @classmethod
    def from_transaction(cls, tx: CreditTransaction) -> "TransactionItem":
        return cls(
            id=tx.id,
            type=tx.kind.value,
            amount=tx.amount,
            signed_amount=tx.signed_amount,
            balance=tx.balance,
            timestamp=tx.timestamp,
        )


class TransactionListResponse(BaseModel):
    """A user's credit transactions, newest first."""
    user_id: str
    transactions: list[TransactionItem]


class PeriodSummary(BaseModel):
    """Credits in and out over a period."""
    earned: int
    spent: int
    net: int
    transaction_count: int

    @classmethod
    def from_summary(cls, summary: LedgerSummary) -> "PeriodSummary":
        return cls(
            earned=summary.earned,
            spent=summary.spent,
            net=summary.net,
            transaction_count=summary.transaction_count,
        )


class MonthSummary(PeriodSummary):
    month: int


class SummaryResponse(BaseModel):
    """Summary for a month, or for a year with its monthly breakdown."""
    user_id: str
    year: int
    month: Optional[int] = None
    summary: PeriodSummary
    months: list[MonthSummary] = []


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=BalanceResponse,
    summary="Get balance",
    description="Current credit balance of the calling user",
)
async def get_balance(
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> BalanceResponse:
    balance = await ledger.balances.get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=balance)


@router.post(
    "/credits",
    response_model=BalanceResponse,
    status_code=status.HTTP_200_OK,
    summary="Add credits",
)
async def add_credits(
    request: CreditAmountRequest,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> BalanceResponse:
    """Add credits to the calling user's balance and return the new balance."""
    balance = await ledger.balances.add_credits(user_id, request.amount)
    return BalanceResponse(user_id=user_id, balance=balance)


@router.post(
    "/deduct",
    response_model=BalanceResponse,
    status_code=status.HTTP_200_OK,
    summary="Deduct credits",
    responses={402: {"description": "Insufficient balance"}},
)
async def deduct_credits(
    request: CreditAmountRequest,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> BalanceResponse:
    """
    Deduct credits from the calling user's balance.

    All or nothing: if the balance can't cover the amount the request fails
    with 402 and the balance is unchanged.
    """
    balance = await ledger.balances.deduct_credits(user_id, request.amount)
    return BalanceResponse(user_id=user_id, balance=balance)


@router.get(
    "/transactions",
    response_model=TransactionListResponse,
    summary="List credit transactions",
)
async def list_transactions(
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> TransactionListResponse:
    transactions = await ledger.balances.list_transactions(user_id)
    return TransactionListResponse(
        user_id=user_id,
        transactions=[TransactionItem.from_transaction(tx) for tx in transactions],
    )


@router.get(
    "/summary",
    response_model=SummaryResponse,
    summary="Summarize credit activity",
    description="Earned, spent and net credits for a month, or for a whole year with a monthly breakdown",
)
async def get_summary(
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
    year: int = Query(ge=1970, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
) -> SummaryResponse:
    transactions = await ledger.balances.list_transactions(user_id)

    if month is not None:
        summary = summarize_month(transactions, year, month, ledger.tz)
        return SummaryResponse(
            user_id=user_id,
            year=year,
            month=month,
            summary=PeriodSummary.from_summary(summary),
        )

    breakdown = monthly_breakdown(transactions, year, ledger.tz)
    return SummaryResponse(
        user_id=user_id,
        year=year,
        summary=PeriodSummary.from_summary(summarize_year(transactions, year, ledger.tz)),
        months=[
            MonthSummary(month=number, **PeriodSummary.from_summary(summary).model_dump())
            for number, summary in breakdown
        ],
    )
