"""
Class slot API endpoints.

Coaches publish slots, students book them (paying the slot's credit cost),
and the slot's creator or any coach marks them finished. Every transition
re-checks the slot as stored, so two students racing for the same slot
get one booking and one 409.
"""

import logging
from datetime import date as Date, datetime
from typing import Optional

from fastapi import APIRouter, Query, Response, status
from pydantic import BaseModel, Field

from ...core.ledger import ClassSlot
from ..dependencies import ActingUserId, AuthenticatedUser, LedgerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class CreateClassRequest(BaseModel):
    """
    A new class slot.

    Only the time of day of start_time and end_time is used; the calendar
    day comes from `date`.
    """
    date: Date = Field(description="Calendar day of the class")
    start_time: datetime = Field(description="Start (time of day is used)")
    end_time: datetime = Field(description="End (time of day is used)")
    credit_cost: int = Field(description="Credits a student pays to book", ge=0)
    instructor_name: Optional[str] = Field(
        None,
        description="Display name; defaults to the creator's profile name",
        max_length=200,
    )
    class_time: Optional[str] = Field(
        None,
        description="Display label; derived from start and end when omitted",
        max_length=100,
    )


class UpdateClassRequest(BaseModel):
    """Fields to change. Omitted fields are left as they are."""
    instructor_name: Optional[str] = Field(None, max_length=200)
    class_time: Optional[str] = Field(None, max_length=100)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    credit_cost: Optional[int] = Field(None, ge=0)


class ClassResponse(BaseModel):
    """A class slot with its derived status."""
    id: str
    instructor_name: str
    class_time: str
    date: datetime
    start_time: datetime
    end_time: datetime
    credit_cost: int
    student_id: Optional[str] = None
    is_available: bool
    is_finished: bool
    status: str = Field(description="Available, Booked or Completed")
    created_by: Optional[str] = None

    @classmethod
    def from_slot(cls, slot: ClassSlot) -> "ClassResponse":
        return cls(
            id=slot.id,
            instructor_name=slot.instructor_name,
            class_time=slot.class_time,
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            credit_cost=slot.credit_cost,
            student_id=slot.student_id,
            is_available=slot.is_available,
            is_finished=slot.is_finished,
            status=slot.status.value,
            created_by=slot.created_by,
        )


class ClassListResponse(BaseModel):
    classes: list[ClassResponse]
    count: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=ClassResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a class slot",
)
async def create_class(
    request: CreateClassRequest,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> ClassResponse:
    slot = await ledger.registry.create(
        user_id,
        date=request.date,
        start_time=request.start_time,
        end_time=request.end_time,
        credit_cost=request.credit_cost,
        instructor_name=request.instructor_name,
        class_time=request.class_time,
    )
    return ClassResponse.from_slot(slot)


@router.get(
    "",
    response_model=ClassListResponse,
    summary="List class slots",
    description="All known slots, or the slots on one calendar day",
)
async def list_classes(
    ledger: LedgerDep,
    api_key: AuthenticatedUser,
    day: Optional[Date] = Query(default=None, alias="date"),
    available_only: bool = False,
) -> ClassListResponse:
    """
    List slots from the registry's in-memory view.

    Slots created moments ago are included even before the store has
    confirmed them.
    """
    registry = ledger.registry
    if day is not None:
        slots = registry.list_available_for_date(day) if available_only else registry.list_for_date(day)
    else:
        slots = registry.available_classes if available_only else registry.classes

    slots = sorted(slots, key=lambda s: s.start_time)
    return ClassListResponse(
        classes=[ClassResponse.from_slot(slot) for slot in slots],
        count=len(slots),
    )


@router.get(
    "/{class_id}",
    response_model=ClassResponse,
    summary="Get a class slot",
)
async def get_class(
    class_id: str,
    ledger: LedgerDep,
    api_key: AuthenticatedUser,
) -> ClassResponse:
    slot = await ledger.registry.get(class_id)
    return ClassResponse.from_slot(slot)


@router.patch(
    "/{class_id}",
    response_model=ClassResponse,
    summary="Edit a class slot",
    description="Restricted to the slot's creator or a coach",
)
async def update_class(
    class_id: str,
    request: UpdateClassRequest,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> ClassResponse:
    slot = await ledger.registry.get(class_id)
    updated = await ledger.registry.update(
        slot,
        user_id,
        instructor_name=request.instructor_name,
        class_time=request.class_time,
        start_time=request.start_time,
        end_time=request.end_time,
        credit_cost=request.credit_cost,
    )
    return ClassResponse.from_slot(updated)


@router.delete(
    "/{class_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a class slot",
    description="Restricted to the slot's creator or a coach",
)
async def delete_class(
    class_id: str,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> Response:
    slot = await ledger.registry.get(class_id)
    await ledger.registry.delete(slot, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{class_id}/book",
    response_model=ClassResponse,
    summary="Book a class slot",
    responses={
        402: {"description": "Insufficient balance"},
        409: {"description": "Class not available"},
    },
)
async def book_class(
    class_id: str,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> ClassResponse:
    """
    Book the slot for the calling user and charge its credit cost.

    If the charge fails the slot is released again and stays available.
    """
    slot = await ledger.registry.get(class_id)
    booked = await ledger.registry.book(slot, user_id)
    return ClassResponse.from_slot(booked)


@router.post(
    "/{class_id}/finish",
    response_model=ClassResponse,
    summary="Mark a class slot finished",
    responses={
        403: {"description": "Not the creator or a coach"},
        409: {"description": "Class not booked, or already finished"},
    },
)
async def finish_class(
    class_id: str,
    ledger: LedgerDep,
    user_id: ActingUserId,
    api_key: AuthenticatedUser,
) -> ClassResponse:
    slot = await ledger.registry.get(class_id)
    finished = await ledger.registry.mark_finished(slot, user_id)
    return ClassResponse.from_slot(finished)
