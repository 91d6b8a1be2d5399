"""
Class registry: the lifecycle of bookable class slots.

States and transitions:

    create         -> Available
    book           Available -> Booked      (debits the student)
    mark_finished  Booked    -> Finished    (terminal)
    delete         any state -> gone        (hard delete)

Every transition re-reads the slot from the store before checking its
precondition, so a caller holding a stale ClassSlot can't book a slot twice
or finish it twice. Transitions on the same slot are serialized in-process.

The registry also keeps an observable in-memory view of all classes, fed
by the store's change notifications plus the registry's own writes. Slots
created here are shown from a "recently created" overlay until the store
confirms them.
"""

import asyncio
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Callable, Optional

from .balance import BalanceManager
from .concurrency import KeyedLock
from .earnings import EarningsAccrual, EarningsDispatcher
from .errors import (
    InvalidStateError,
    LedgerError,
    NotAvailableError,
    NotFoundError,
    PersistenceError,
)
from .models import BookingRecord, ClassSlot, EarningsAccrualPoint, utc_now, validate_credit_cost
from .roles import ProfileDirectory, RoleGate, require_identity
from .schedule import (
    DayLike,
    format_time_label,
    normalize_onto_day,
    same_calendar_day,
    start_of_day,
)
from .store import BOOKINGS, CLASSES, Document, DocumentStore, coach_students

logger = logging.getLogger(__name__)

FALLBACK_INSTRUCTOR_NAME = "Coach"

ClassesListener = Callable[[list[ClassSlot]], None]


class ClassRegistry:
    """
    Owns class slots and orchestrates the money movement around them.

    Booking debits the student through BalanceManager (errors propagate and
    the slot is rolled back). Coach earnings are dispatched in the
    background through EarningsDispatcher and never affect the outcome.
    """

    def __init__(
        self,
        store: DocumentStore,
        balances: BalanceManager,
        earnings: EarningsDispatcher,
        role_gate: RoleGate,
        profiles: ProfileDirectory,
        tz: tzinfo = timezone.utc,
        accrual_point: EarningsAccrualPoint = EarningsAccrualPoint.FINISH,
        clock: Callable = utc_now,
    ) -> None:
        self._store = store
        self._balances = balances
        self._earnings = earnings
        self._role_gate = role_gate
        self._profiles = profiles
        self._tz = tz
        self._accrual_point = accrual_point
        self._clock = clock
        self._locks = KeyedLock()

        self._classes: dict[str, ClassSlot] = {}
        self._recently_created: dict[str, ClassSlot] = {}
        self._listeners: list[ClassesListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # -----------------------------------------------------------------------
    # Lifecycle and Observation
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """
        Load all classes and follow the store's change notifications.

        The event loop running `start` becomes the only place the in-memory
        view is mutated.
        """
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(CLASSES, self._on_snapshot)
        await self.refresh()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def refresh(self) -> None:
        """Reload the in-memory view from the store."""
        documents = await self._store.query(CLASSES)
        self._apply_snapshot(documents)

    @property
    def classes(self) -> list[ClassSlot]:
        return list(self._classes.values())

    @property
    def available_classes(self) -> list[ClassSlot]:
        return [slot for slot in self._classes.values() if slot.is_available]

    @property
    def recently_created(self) -> list[ClassSlot]:
        return list(self._recently_created.values())

    def subscribe(self, listener: ClassesListener) -> Callable[[], None]:
        """Call `listener(all_classes)` whenever the view changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def get(self, class_id: str) -> ClassSlot:
        """Read a slot from the store. Raises NotFoundError if it's gone."""
        return await self._load(class_id)

    def list_for_date(self, day: DayLike) -> list[ClassSlot]:
        """
        Every known slot on the given calendar day.

        Recently created slots come first so a slot shows up as soon as it
        was created, before the store's notification arrives. Each id
        appears once.
        """
        result: dict[str, ClassSlot] = {}
        for slot in self._recently_created.values():
            if same_calendar_day(slot.date, day, self._tz):
                result[slot.id] = slot

        for slot in self._classes.values():
            if slot.id not in result and same_calendar_day(slot.date, day, self._tz):
                result[slot.id] = slot

        logger.debug(
            "Listed classes for date",
            extra={"day": str(day), "count": len(result)}
        )
        return list(result.values())

    def list_available_for_date(self, day: DayLike) -> list[ClassSlot]:
        return [slot for slot in self.list_for_date(day) if slot.is_available]

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    async def create(
        self,
        acting_user_id: Optional[str],
        date: DayLike,
        start_time: datetime,
        end_time: datetime,
        credit_cost: int,
        instructor_name: Optional[str] = None,
        class_time: Optional[str] = None,
    ) -> ClassSlot:
        """
        Create an available slot owned by the acting user.

        Start and end keep only their time of day; the calendar date comes
        from `date`. When no time label is given it is derived from the
        normalized start and end.
        """
        user_id = require_identity(acting_user_id)
        validate_credit_cost(credit_cost)
        name = await self._resolve_instructor_name(user_id, instructor_name)

        day_start = start_of_day(date, self._tz)
        start = normalize_onto_day(date, start_time, self._tz)
        end = normalize_onto_day(date, end_time, self._tz)
        if end < start:
            raise ValueError("Class end time must not be before its start time")

        slot = ClassSlot(
            instructor_name=name,
            class_time=class_time or format_time_label(start, end, self._tz),
            date=day_start,
            start_time=start,
            end_time=end,
            credit_cost=credit_cost,
            created_by=user_id,
        )

        # Visible immediately; withdrawn again if the write fails
        self._recently_created[slot.id] = slot
        self._classes[slot.id] = slot
        self._notify()

        try:
            await self._store.set(CLASSES, slot.id, slot.to_document())
        except PersistenceError:
            logger.error("Failed to save class", extra={"class_id": slot.id})
            self._forget(slot.id)
            raise

        logger.info(
            "Class created",
            extra={
                "class_id": slot.id,
                "created_by": user_id,
                "date": slot.date.isoformat(),
                "credit_cost": slot.credit_cost,
            }
        )
        return slot

    async def book(self, slot: ClassSlot, acting_student_id: Optional[str]) -> ClassSlot:
        """
        Book a slot for the acting student and debit its cost.

        The slot is reserved first, then the student is charged. If the
        charge fails (e.g. InsufficientBalanceError) the reservation is
        undone and the error propagates, so a slot is never left booked
        without payment.
        """
        student_id = require_identity(acting_student_id)

        async with self._locks.hold(slot.id):
            current = await self._load(slot.id)
            if not current.is_available:
                logger.warning(
                    "Booking rejected, class not available",
                    extra={"class_id": current.id, "student_id": student_id}
                )
                raise NotAvailableError(f"Class {current.id} is not available")

            booked = current.booked_by(student_id)
            await self._store.update(
                CLASSES,
                current.id,
                {"isAvailable": False, "studentId": student_id},
            )

            try:
                await self._balances.deduct_credits(student_id, current.credit_cost)
            except LedgerError as e:
                release_error = await self._release(current, booked)
                if release_error is not None:
                    e.add_note(
                        f"Class {current.id} is still booked for {student_id} without payment: "
                        f"release failed: {release_error}"
                    )
                raise

            booked_at = self._clock()
            await self._record_booking(booked, student_id, booked_at)

            if self._accrual_point == EarningsAccrualPoint.BOOK:
                self._dispatch_earnings(booked, student_id)

            self._put(booked)

        logger.info(
            "Class booked",
            extra={
                "class_id": booked.id,
                "student_id": student_id,
                "credit_cost": booked.credit_cost,
            }
        )
        return booked

    async def mark_finished(self, slot: ClassSlot, acting_user_id: Optional[str]) -> ClassSlot:
        """
        Mark a booked slot as finished.

        Only the slot's creator or a Coach may do this. Finishing is
        terminal: a second call fails with InvalidStateError.
        """
        async with self._locks.hold(slot.id):
            current = await self._load(slot.id)
            await self._role_gate.require_creator_or_coach(current, acting_user_id, "finish")

            if current.is_available:
                raise InvalidStateError("Class must be booked before it can be finished")
            if current.is_finished:
                raise InvalidStateError("Class is already finished")

            finished = current.finished()
            await self._store.update(
                CLASSES,
                current.id,
                {"isFinished": True, "isAvailable": False},
            )

            if self._accrual_point == EarningsAccrualPoint.FINISH:
                self._dispatch_earnings(finished, finished.student_id)

            self._put(finished)

        logger.info(
            "Class finished",
            extra={"class_id": finished.id, "finished_by": acting_user_id}
        )
        return finished

    async def update(
        self,
        slot: ClassSlot,
        acting_user_id: Optional[str],
        instructor_name: Optional[str] = None,
        class_time: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        credit_cost: Optional[int] = None,
    ) -> ClassSlot:
        """
        Edit the given fields of a slot. Fields left as None are unchanged.

        Changing start or end re-derives the time label from the new times
        (overriding `class_time`). With nothing to change this is a no-op
        that returns the slot as stored.
        """
        async with self._locks.hold(slot.id):
            current = await self._load(slot.id)
            user_id = await self._role_gate.require_creator_or_coach(current, acting_user_id, "edit")

            changes: dict = {}
            updated = current

            if instructor_name is not None:
                name = await self._resolve_instructor_name(user_id, instructor_name)
                changes["instructorName"] = name
                updated = replace(updated, instructor_name=name)

            if class_time is not None:
                changes["classTime"] = class_time
                updated = replace(updated, class_time=class_time)

            if credit_cost is not None:
                validate_credit_cost(credit_cost)
                changes["creditCost"] = credit_cost
                updated = replace(updated, credit_cost=credit_cost)

            if start_time is not None:
                start = normalize_onto_day(current.date, start_time, self._tz)
                changes["startTime"] = start
                updated = replace(updated, start_time=start)

            if end_time is not None:
                end = normalize_onto_day(current.date, end_time, self._tz)
                changes["endTime"] = end
                updated = replace(updated, end_time=end)

            if start_time is not None or end_time is not None:
                if updated.end_time < updated.start_time:
                    raise ValueError("Class end time must not be before its start time")
                label = format_time_label(updated.start_time, updated.end_time, self._tz)
                changes["classTime"] = label
                updated = replace(updated, class_time=label)

            if not changes:
                logger.debug("No changes to update", extra={"class_id": current.id})
                return current

            await self._store.update(CLASSES, current.id, changes)
            self._put(updated)

        logger.info(
            "Class updated",
            extra={"class_id": updated.id, "fields": sorted(changes)}
        )
        return updated

    async def delete(self, slot: ClassSlot, acting_user_id: Optional[str]) -> None:
        """Hard-delete a slot. Restricted to its creator or a Coach."""
        async with self._locks.hold(slot.id):
            current = await self._load(slot.id)
            await self._role_gate.require_creator_or_coach(current, acting_user_id, "delete")

            await self._store.delete(CLASSES, current.id)
            self._forget(current.id)

        logger.info(
            "Class deleted",
            extra={"class_id": current.id, "deleted_by": acting_user_id}
        )

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    async def _load(self, class_id: str) -> ClassSlot:
        data = await self._store.get(CLASSES, class_id)
        if data is None:
            raise NotFoundError(f"Class {class_id} not found")
        try:
            return ClassSlot.from_document(data)
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Class {class_id} is malformed: {e}") from e

    async def _resolve_instructor_name(self, user_id: str, requested: Optional[str]) -> str:
        name = (requested or "").strip()
        if name and name != FALLBACK_INSTRUCTOR_NAME:
            return name

        profile_name = await self._profiles.display_name(user_id)
        return profile_name or FALLBACK_INSTRUCTOR_NAME

    async def _release(self, slot: ClassSlot, booked: ClassSlot) -> Optional[PersistenceError]:
        """
        Undo a reservation after the charge failed.

        Returns the store error if the release could not be written; the
        cached view then shows the slot as booked, matching the store.
        """
        try:
            await self._store.update(
                CLASSES,
                slot.id,
                {"isAvailable": True, "studentId": None},
            )
        except PersistenceError as e:
            logger.error(
                "Failed to release class after charge failure",
                extra={"class_id": slot.id, "error": str(e)}
            )
            self._put(booked)
            return e

        self._put(slot)
        logger.info("Released class after charge failure", extra={"class_id": slot.id})
        return None

    async def _record_booking(self, slot: ClassSlot, student_id: str, booked_at: datetime) -> None:
        """
        Write the denormalized booking record and the coach's roster entry.

        These are projections of the slot, which is already committed, so a
        failure is logged rather than raised.
        """
        record = BookingRecord.for_slot(slot, student_id, booked_at)
        try:
            await self._store.add(BOOKINGS, record.to_document())
            if slot.created_by:
                await self._store.set(
                    coach_students(slot.created_by),
                    student_id,
                    {
                        "studentId": student_id,
                        "classId": slot.id,
                        "classTime": slot.class_time,
                        "bookedAt": booked_at,
                    },
                    merge=True,
                )
        except PersistenceError as e:
            logger.error(
                "Failed to record booking",
                extra={"class_id": slot.id, "student_id": student_id, "error": str(e)}
            )

    def _dispatch_earnings(self, slot: ClassSlot, student_id: Optional[str]) -> None:
        if not slot.created_by:
            logger.warning("Class has no creator, skipping earnings", extra={"class_id": slot.id})
            return

        self._earnings.dispatch(EarningsAccrual(
            coach_id=slot.created_by,
            amount=slot.credit_cost,
            student_id=student_id,
            class_id=slot.id,
            class_time=slot.class_time,
        ))

    def _put(self, slot: ClassSlot) -> None:
        self._classes[slot.id] = slot
        if slot.id in self._recently_created:
            self._recently_created[slot.id] = slot
        self._notify()

    def _forget(self, class_id: str) -> None:
        self._classes.pop(class_id, None)
        self._recently_created.pop(class_id, None)
        self._notify()

    def _on_snapshot(self, documents: list[Document]) -> None:
        """Store listener; may be called from any thread."""
        loop = self._loop
        if loop is None or threading.get_ident() == self._loop_thread:
            self._apply_snapshot(documents)
        else:
            loop.call_soon_threadsafe(self._apply_snapshot, documents)

    def _apply_snapshot(self, documents: list[Document]) -> None:
        classes: dict[str, ClassSlot] = {}
        for doc in documents:
            try:
                slot = ClassSlot.from_document(doc.data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Skipping malformed class document",
                    extra={"document_id": doc.id, "error": str(e)}
                )
                continue
            classes[slot.id] = slot

        # The store now knows these; the overlay is no longer needed for them
        for class_id in list(self._recently_created):
            if class_id in classes:
                del self._recently_created[class_id]

        # Keep unconfirmed creations visible
        for class_id, slot in self._recently_created.items():
            classes.setdefault(class_id, slot)

        self._classes = classes
        self._notify()

    def _notify(self) -> None:
        snapshot = list(self._classes.values())
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Classes listener failed")
