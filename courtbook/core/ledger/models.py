"""
Domain models for the credit ledger and class booking.

These models represent the core business concepts. They have no dependencies
on external frameworks, databases, or APIs. Translation to and from stored
documents happens at the edges (`to_document` / `from_document`), keeping
the wire field names in one place per model.
"""

from dataclasses import dataclass, field, replace
from datetime import date as Date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_credit_cost(credit_cost: Any) -> None:
    """Credit costs are non-negative ints; bools and floats are rejected."""
    if not isinstance(credit_cost, int) or isinstance(credit_cost, bool):
        raise TypeError(f"Credit cost must be an int, got {type(credit_cost).__name__}")
    if credit_cost < 0:
        raise ValueError("Credit cost cannot be negative")


class Role(Enum):
    """Roles a profile can hold. Anything unrecognized maps to UNKNOWN."""
    STUDENT = "Student"
    COACH = "Coach"
    MANAGER = "Manager"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        if isinstance(value, str):
            for role in cls:
                if role.value == value:
                    return role
        return cls.UNKNOWN


class ClassStatus(Enum):
    """Display status derived from a slot's flags."""
    AVAILABLE = "Available"
    BOOKED = "Booked"
    COMPLETED = "Completed"


class TransactionKind(Enum):
    ADD = "add"
    DEDUCT = "deduct"


class EarningsAccrualPoint(Enum):
    """
    When a coach is credited for a slot.

    Exactly one point accrues per slot, so a slot that is booked and then
    finished pays the coach once.
    """
    BOOK = "book"
    FINISH = "finish"


@dataclass(frozen=True)
class ClassSlot:
    """
    A bookable, time-boxed coaching session.

    Frozen because every state change produces a new slot value; the
    registry swaps the new value into its cache after the store accepts it.
    """
    instructor_name: str
    class_time: str
    date: datetime
    start_time: datetime
    end_time: datetime
    credit_cost: int
    id: str = field(default_factory=lambda: str(uuid4()).upper())
    student_id: Optional[str] = None
    is_available: bool = True
    is_finished: bool = False
    created_by: Optional[str] = None

    def __post_init__(self) -> None:
        validate_credit_cost(self.credit_cost)
        if self.is_finished and self.is_available:
            raise ValueError("A finished class cannot be available")
        if self.is_available and self.student_id is not None:
            raise ValueError("An available class cannot have a student")

    @property
    def status(self) -> ClassStatus:
        if self.is_available:
            return ClassStatus.AVAILABLE
        if self.is_finished:
            return ClassStatus.COMPLETED
        return ClassStatus.BOOKED

    def booked_by(self, student_id: str) -> "ClassSlot":
        return replace(self, is_available=False, student_id=student_id)

    def finished(self) -> "ClassSlot":
        return replace(self, is_available=False, is_finished=True)

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instructorName": self.instructor_name,
            "classTime": self.class_time,
            "date": self.date,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "studentId": self.student_id,
            "creditCost": self.credit_cost,
            "isAvailable": self.is_available,
            "isFinished": self.is_finished,
            "createdBy": self.created_by,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "ClassSlot":
        """
        Build a slot from a stored document.

        Raises KeyError/TypeError/ValueError on malformed documents; list
        operations catch these and skip the record.
        """
        return cls(
            id=str(data["id"]),
            instructor_name=str(data["instructorName"]),
            class_time=str(data["classTime"]),
            date=coerce_datetime(data["date"]),
            start_time=coerce_datetime(data["startTime"]),
            end_time=coerce_datetime(data["endTime"]),
            student_id=data.get("studentId"),
            credit_cost=data["creditCost"],
            is_available=bool(data.get("isAvailable", True)),
            is_finished=bool(data.get("isFinished", False)),
            created_by=data.get("createdBy"),
        )


@dataclass(frozen=True)
class CreditTransaction:
    """
    One immutable entry in a user's credit ledger.

    `amount` is always the magnitude; `kind` carries the direction.
    `balance` is the user's balance right after this entry was applied.
    """
    user_id: str
    amount: int
    kind: TransactionKind
    balance: int
    id: str = field(default_factory=lambda: str(uuid4()).upper())
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.kind == TransactionKind.ADD else -self.amount

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": self.amount,
            "type": self.kind.value,
            "timestamp": self.timestamp,
            "balance": self.balance,
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "CreditTransaction":
        kind = TransactionKind(data["type"])
        amount = int(data["amount"])
        # Older records stored deductions as negative amounts.
        if kind == TransactionKind.DEDUCT:
            amount = abs(amount)

        timestamp = data.get("timestamp")
        return cls(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            amount=amount,
            kind=kind,
            balance=int(data["balance"]),
            timestamp=coerce_datetime(timestamp) if timestamp is not None else utc_now(),
        )


@dataclass(frozen=True)
class EarningTransaction:
    """A single accrual to a coach's earnings."""
    coach_id: str
    amount: int
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    class_time: Optional[str] = None
    description: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()).upper())
    timestamp: datetime = field(default_factory=utc_now)

    def to_document(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "coachId": self.coach_id,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }
        # Optional fields are omitted rather than stored as null
        if self.student_id is not None:
            data["studentId"] = self.student_id
        if self.class_id is not None:
            data["classId"] = self.class_id
        if self.class_time is not None:
            data["classTime"] = self.class_time
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "EarningTransaction":
        amount = data["amount"]
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError(f"amount must be an int, got {type(amount).__name__}")

        timestamp = data.get("timestamp")
        return cls(
            id=str(data["id"]),
            coach_id=str(data["coachId"]),
            amount=amount,
            student_id=data.get("studentId"),
            class_id=data.get("classId"),
            class_time=data.get("classTime"),
            description=data.get("description", "Earning Transaction"),
            timestamp=coerce_datetime(timestamp) if timestamp is not None else utc_now(),
        )


@dataclass
class UserProfile:
    """
    Identity metadata owned by the profile collaborator.

    The ledger only reads it: the role for authorization and the name for
    display.
    """
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone_number: str = ""
    profile_image_url: str = ""
    role: Role = Role.UNKNOWN

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_document(cls, user_id: str, data: dict[str, Any]) -> "UserProfile":
        return cls(
            id=user_id,
            first_name=str(data.get("firstName") or ""),
            last_name=str(data.get("lastName") or ""),
            email=str(data.get("email") or ""),
            phone_number=str(data.get("phoneNumber") or ""),
            profile_image_url=str(data.get("profileImageURL") or ""),
            role=Role.parse(data.get("role")),
        )


@dataclass(frozen=True)
class BookingRecord:
    """Denormalized record written to `bookings` when a student books."""
    coach_id: str
    student_id: str
    class_id: str
    class_time: str
    cost: int
    date: datetime
    instructor_name: str
    booked_at: datetime = field(default_factory=utc_now)
    status: str = "completed"

    @classmethod
    def for_slot(cls, slot: ClassSlot, student_id: str, booked_at: datetime) -> "BookingRecord":
        return cls(
            coach_id=slot.created_by or "",
            student_id=student_id,
            class_id=slot.id,
            class_time=slot.class_time,
            cost=slot.credit_cost,
            date=slot.date,
            instructor_name=slot.instructor_name,
            booked_at=booked_at,
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "coachId": self.coach_id,
            "studentId": self.student_id,
            "classId": self.class_id,
            "classTime": self.class_time,
            "credits": self.cost,
            "cost": self.cost,
            "bookedAt": self.booked_at,
            "date": self.date,
            "instructorName": self.instructor_name,
            "createdBy": self.coach_id,
            "status": self.status,
        }


@dataclass(frozen=True)
class LedgerSummary:
    """Credits in, credits out and net change over a period."""
    earned: int = 0
    spent: int = 0
    transaction_count: int = 0

    @property
    def net(self) -> int:
        return self.earned - self.spent


def coerce_datetime(value: Any) -> datetime:
    """
    Normalize a stored timestamp to an aware datetime.

    Stores hand back datetimes, dates, or ISO strings depending on the
    driver (Snowflake VARIANT round-trips timestamps as strings). Naive
    values are treated as UTC.
    """
    if isinstance(value, datetime):
        result = value
    elif isinstance(value, Date):
        result = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        result = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise TypeError(f"Cannot interpret {type(value).__name__} as a timestamp")

    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result
