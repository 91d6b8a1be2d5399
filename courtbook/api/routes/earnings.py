"""
Coach earnings API endpoints.

Earnings accrue in the background when a coach's class is finished (or
booked, depending on configuration), so a total read right after a
transition may not include it yet.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ...core.ledger import EarningTransaction
from ...core.ledger.roles import require_identity
from ..dependencies import ActingUserId, AuthenticatedUser, LedgerDep

logger = logging.getLogger(__name__)

router = APIRouter()


class EarningsResponse(BaseModel):
    coach_id: str
    total_earnings: int = Field(description="Credits accrued over all time")


class EarningItem(BaseModel):
    """One accrual to the coach's earnings."""
    id: str
    amount: int
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    class_time: Optional[str] = None
    description: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_transaction(cls, tx: EarningTransaction) -> "EarningItem":
        return cls(
            id=tx.id,
            amount=tx.amount,
            student_id=tx.student_id,
            class_id=tx.class_id,
            class_time=tx.class_time,
            description=tx.description,
            timestamp=tx.timestamp,
        )


class EarningListResponse(BaseModel):
    coach_id: str
    transactions: list[EarningItem]


@router.get(
    "",
    response_model=EarningsResponse,
    summary="Get total earnings",
    description="Total credits accrued by the calling coach",
)
async def get_earnings(
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> EarningsResponse:
    coach_id = require_identity(user_id)
    total = await ledger.earnings.get_earnings(coach_id)
    return EarningsResponse(coach_id=coach_id, total_earnings=total)


@router.get(
    "/transactions",
    response_model=EarningListResponse,
    summary="List earning transactions",
)
async def list_earning_transactions(
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> EarningListResponse:
    coach_id = require_identity(user_id)
    transactions = await ledger.earnings.list_earning_transactions(coach_id)
    return EarningListResponse(
        coach_id=coach_id,
        transactions=[EarningItem.from_transaction(tx) for tx in transactions],
    )
