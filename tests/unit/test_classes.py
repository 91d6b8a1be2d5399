"""
Unit tests for the class registry.

Covers the slot lifecycle (create, book, finish, edit, delete), the money
movement around it, and the in-memory view the registry maintains.

Testing philosophy:
- Each test should have a clear "given/when/then" structure
- Prefer the real in-memory store over mocks; inject failures explicitly
"""

import asyncio
from datetime import date, datetime, timezone

import pytest

from courtbook.core.ledger import (
    AuthorizationError,
    ClassStatus,
    EarningsAccrualPoint,
    IdentityError,
    InsufficientBalanceError,
    InvalidStateError,
    NotAvailableError,
    NotFoundError,
    PersistenceError,
    TransactionKind,
    build_ledger,
)
from courtbook.core.ledger.store import BOOKINGS, CLASSES, USERS, coach_students

from tests.support import COACH_ID, OTHER_COACH_ID, OTHER_STUDENT_ID, STUDENT_ID

DAY = date(2025, 3, 10)


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    """A time of day on an unrelated date, like a time picker returns."""
    return datetime(2025, 1, day, hour, minute, tzinfo=timezone.utc)


async def create_slot(ledger, credit_cost: int = 20, day: date = DAY, creator: str = COACH_ID, hour: int = 9):
    return await ledger.registry.create(
        creator,
        date=day,
        start_time=at(hour),
        end_time=at(hour + 1),
        credit_cost=credit_cost,
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreate:
    """Tests for publishing new slots."""

    async def test_new_slot_is_available(self, ledger):
        slot = await create_slot(ledger)

        assert slot.is_available
        assert not slot.is_finished
        assert slot.student_id is None
        assert slot.created_by == COACH_ID
        assert slot.status == ClassStatus.AVAILABLE

    async def test_times_are_moved_onto_the_class_day(self, ledger):
        """
        Given start and end times that carry another date
        When the slot is created for DAY
        Then the stored slot's date, start and end all fall on DAY
        """
        slot = await create_slot(ledger)

        stored = await ledger.registry.get(slot.id)
        assert stored.date == datetime(2025, 3, 10, tzinfo=timezone.utc)
        assert stored.start_time == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        assert stored.end_time == datetime(2025, 3, 10, 10, 0, tzinfo=timezone.utc)

    async def test_date_round_trips_whatever_the_time_of_day(self, ledger):
        late = await ledger.registry.create(
            COACH_ID,
            date=datetime(2025, 3, 10, 23, 59, tzinfo=timezone.utc),
            start_time=at(22),
            end_time=at(23, 30),
            credit_cost=5,
        )

        stored = await ledger.registry.get(late.id)
        assert stored.date.date() == DAY
        assert stored.start_time.date() == DAY

    async def test_time_label_is_derived(self, ledger):
        slot = await create_slot(ledger)

        assert slot.class_time == "9:00 AM - 10:00 AM"

    async def test_explicit_time_label_is_kept(self, ledger):
        slot = await ledger.registry.create(
            COACH_ID,
            date=DAY,
            start_time=at(9),
            end_time=at(10),
            credit_cost=20,
            class_time="Morning drills",
        )

        assert slot.class_time == "Morning drills"

    async def test_instructor_name_comes_from_profile(self, ledger):
        slot = await create_slot(ledger)

        assert slot.instructor_name == "Jane Smith"

    async def test_instructor_name_falls_back_to_coach(self, ledger):
        slot = await create_slot(ledger, creator="coach-without-profile")

        assert slot.instructor_name == "Coach"

    async def test_explicit_instructor_name_wins(self, ledger):
        slot = await ledger.registry.create(
            COACH_ID,
            date=DAY,
            start_time=at(9),
            end_time=at(10),
            credit_cost=20,
            instructor_name="Guest Coach Kim",
        )

        assert slot.instructor_name == "Guest Coach Kim"

    async def test_end_before_start_is_rejected(self, ledger):
        with pytest.raises(ValueError, match="end time"):
            await ledger.registry.create(
                COACH_ID,
                date=DAY,
                start_time=at(10),
                end_time=at(9),
                credit_cost=20,
            )

    async def test_negative_cost_is_rejected(self, ledger):
        with pytest.raises(ValueError, match="negative"):
            await create_slot(ledger, credit_cost=-1)

    @pytest.mark.parametrize("credit_cost", [20.0, True])
    async def test_non_integer_cost_is_rejected(self, ledger, credit_cost):
        """A cost the store could not read back never becomes a listed slot."""
        with pytest.raises(TypeError):
            await create_slot(ledger, credit_cost=credit_cost)

        assert ledger.registry.classes == []
        assert ledger.registry.recently_created == []

    async def test_requires_identity(self, ledger):
        with pytest.raises(IdentityError):
            await create_slot(ledger, creator="")

    async def test_slot_is_visible_before_the_store_confirms_it(self, ledger):
        """Observers see the new slot before the store write happens."""
        seen: list[list[str]] = []
        ledger.registry.subscribe(lambda classes: seen.append([c.id for c in classes]))

        slot = await create_slot(ledger)

        assert slot.id in seen[0]
        # The store has confirmed it since, so the overlay is empty again
        assert ledger.registry.recently_created == []
        assert [c.id for c in ledger.registry.classes] == [slot.id]

    async def test_failed_write_withdraws_the_slot(self, ledger, store):
        store.fail("set", CLASSES)

        with pytest.raises(PersistenceError):
            await create_slot(ledger)

        assert ledger.registry.classes == []
        assert ledger.registry.recently_created == []


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

class TestListing:

    async def test_list_for_date_filters_by_calendar_day(self, ledger):
        first = await create_slot(ledger, hour=9)
        second = await create_slot(ledger, hour=13)
        await create_slot(ledger, day=date(2025, 3, 11))

        listed = ledger.registry.list_for_date(DAY)

        assert sorted(s.id for s in listed) == sorted([first.id, second.id])

    async def test_list_available_excludes_booked(self, ledger):
        booked = await create_slot(ledger, hour=9)
        free = await create_slot(ledger, hour=13)
        await ledger.registry.book(booked, STUDENT_ID)

        available = ledger.registry.list_available_for_date(DAY)

        assert [s.id for s in available] == [free.id]
        assert [s.id for s in ledger.registry.available_classes] == [free.id]

    async def test_malformed_documents_are_skipped(self, ledger, memory_store):
        slot = await create_slot(ledger)
        await memory_store.set(CLASSES, "broken", {"id": "broken", "creditCost": "ten"})

        await ledger.registry.refresh()

        assert [c.id for c in ledger.registry.classes] == [slot.id]

    async def test_external_writes_are_picked_up(self, ledger, memory_store):
        """A slot written by someone else shows up through the store's notification."""
        slot = await create_slot(ledger)
        document = slot.to_document()
        document["id"] = "EXTERNAL-1"
        await memory_store.set(CLASSES, "EXTERNAL-1", document)

        assert "EXTERNAL-1" in {c.id for c in ledger.registry.classes}

    async def test_get_unknown_slot(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.registry.get("missing")


# ---------------------------------------------------------------------------
# Booking
# ---------------------------------------------------------------------------

class TestBook:
    """Tests for booking and paying for slots."""

    async def test_booking_charges_the_student(self, ledger):
        """
        Given a coach's slot costing 20 and a student with 50 credits
        When the student books it
        Then the balance is 30 and the slot belongs to the student
        """
        slot = await create_slot(ledger, credit_cost=20)

        booked = await ledger.registry.book(slot, STUDENT_ID)

        assert await ledger.balances.get_balance(STUDENT_ID) == 30
        stored = await ledger.registry.get(slot.id)
        assert not stored.is_available
        assert stored.student_id == STUDENT_ID
        assert booked.status == ClassStatus.BOOKED

    async def test_second_booking_fails(self, ledger):
        slot = await create_slot(ledger)
        await ledger.registry.book(slot, STUDENT_ID)

        with pytest.raises(NotAvailableError):
            await ledger.registry.book(slot, OTHER_STUDENT_ID)

        assert await ledger.balances.get_balance(OTHER_STUDENT_ID) == 50

    async def test_racing_bookings_get_one_winner(self, ledger):
        slot = await create_slot(ledger)

        results = await asyncio.gather(
            ledger.registry.book(slot, STUDENT_ID),
            ledger.registry.book(slot, OTHER_STUDENT_ID),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, NotAvailableError)]
        assert len(failures) == 1
        balances = [
            await ledger.balances.get_balance(STUDENT_ID),
            await ledger.balances.get_balance(OTHER_STUDENT_ID),
        ]
        assert sorted(balances) == [30, 50]

    async def test_insufficient_balance_releases_the_slot(self, ledger, memory_store):
        """
        Given a student with 5 credits and a slot costing 20
        When the student tries to book it
        Then the booking fails and the slot is still available
        """
        await memory_store.set(USERS, "student-z", {"role": "Student", "credits": 5})
        slot = await create_slot(ledger, credit_cost=20)

        with pytest.raises(InsufficientBalanceError):
            await ledger.registry.book(slot, "student-z")

        stored = await ledger.registry.get(slot.id)
        assert stored.is_available
        assert stored.student_id is None
        assert await ledger.balances.get_balance("student-z") == 5
        assert ledger.registry.available_classes[0].id == slot.id

    async def test_failed_charge_releases_the_slot(self, ledger, store):
        slot = await create_slot(ledger)
        store.fail("update", USERS)

        with pytest.raises(PersistenceError):
            await ledger.registry.book(slot, STUDENT_ID)

        assert (await ledger.registry.get(slot.id)).is_available

    async def test_failed_release_is_reported_on_the_error(self, ledger, store, memory_store):
        """
        Given a charge that fails and a release that fails too
        When a student books
        Then the charge error carries a note and the view shows the slot booked
        """
        await memory_store.set(USERS, "student-z", {"role": "Student", "credits": 5})
        slot = await create_slot(ledger, credit_cost=20)
        store.fail("update", CLASSES, after=1)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.registry.book(slot, "student-z")

        assert any("still booked" in note for note in exc_info.value.__notes__)
        assert (await memory_store.get(CLASSES, slot.id))["studentId"] == "student-z"
        cached = next(c for c in ledger.registry.classes if c.id == slot.id)
        assert cached.student_id == "student-z"
        assert ledger.registry.available_classes == []

    async def test_zero_cost_booking(self, ledger):
        """
        Given a free slot and a student with 50 credits
        When the student books it and the coach finishes it
        Then the balance stays 50, a zero deduction is logged and the coach earns 0
        """
        slot = await create_slot(ledger, credit_cost=0)

        booked = await ledger.registry.book(slot, STUDENT_ID)
        await ledger.registry.mark_finished(booked, COACH_ID)
        await ledger.dispatcher.drain()

        assert booked.status == ClassStatus.BOOKED
        assert await ledger.balances.get_balance(STUDENT_ID) == 50
        transactions = await ledger.balances.list_transactions(STUDENT_ID)
        assert [(t.kind, t.amount, t.balance) for t in transactions][0] == (TransactionKind.DEDUCT, 0, 50)
        assert await ledger.earnings.get_earnings(COACH_ID) == 0
        earnings = await ledger.earnings.list_earning_transactions(COACH_ID)
        assert [(e.class_id, e.amount) for e in earnings] == [(slot.id, 0)]

    async def test_booking_records_are_written(self, ledger, memory_store):
        slot = await create_slot(ledger, credit_cost=20)

        await ledger.registry.book(slot, STUDENT_ID)

        bookings = await memory_store.query(BOOKINGS)
        assert len(bookings) == 1
        assert bookings[0].data["studentId"] == STUDENT_ID
        assert bookings[0].data["coachId"] == COACH_ID
        assert bookings[0].data["cost"] == 20
        roster = await memory_store.get(coach_students(COACH_ID), STUDENT_ID)
        assert roster["classId"] == slot.id

    async def test_booking_record_failure_does_not_fail_the_booking(self, ledger, store):
        slot = await create_slot(ledger)
        store.fail("add", BOOKINGS)

        booked = await ledger.registry.book(slot, STUDENT_ID)

        assert booked.student_id == STUDENT_ID
        assert await ledger.balances.get_balance(STUDENT_ID) == 30

    async def test_booking_requires_identity(self, ledger):
        slot = await create_slot(ledger)

        with pytest.raises(IdentityError):
            await ledger.registry.book(slot, None)

    async def test_booking_does_not_pay_the_coach_by_default(self, ledger):
        slot = await create_slot(ledger)

        await ledger.registry.book(slot, STUDENT_ID)
        await ledger.dispatcher.drain()

        assert await ledger.earnings.get_earnings(COACH_ID) == 0


# ---------------------------------------------------------------------------
# Finishing
# ---------------------------------------------------------------------------

class TestMarkFinished:
    """Tests for the Booked -> Finished transition."""

    async def test_finishing_pays_the_coach_once(self, ledger):
        """
        Given a booked slot costing 20
        When the coach marks it finished, then tries again
        Then earnings grow by 20 and the second call fails
        """
        slot = await create_slot(ledger, credit_cost=20)
        await ledger.registry.book(slot, STUDENT_ID)

        finished = await ledger.registry.mark_finished(slot, COACH_ID)
        await ledger.dispatcher.drain()

        assert finished.status == ClassStatus.COMPLETED
        assert await ledger.earnings.get_earnings(COACH_ID) == 20

        with pytest.raises(InvalidStateError):
            await ledger.registry.mark_finished(slot, COACH_ID)
        await ledger.dispatcher.drain()

        assert await ledger.earnings.get_earnings(COACH_ID) == 20
        transactions = await ledger.earnings.list_earning_transactions(COACH_ID)
        assert len(transactions) == 1
        assert transactions[0].class_id == slot.id
        assert transactions[0].student_id == STUDENT_ID

    async def test_available_slot_cannot_be_finished(self, ledger):
        slot = await create_slot(ledger)

        with pytest.raises(InvalidStateError):
            await ledger.registry.mark_finished(slot, COACH_ID)

    async def test_any_coach_may_finish(self, ledger):
        slot = await create_slot(ledger)
        await ledger.registry.book(slot, STUDENT_ID)

        finished = await ledger.registry.mark_finished(slot, OTHER_COACH_ID)
        await ledger.dispatcher.drain()

        assert finished.is_finished
        # Earnings go to the slot's creator, not to whoever finished it
        assert await ledger.earnings.get_earnings(COACH_ID) == 20
        assert await ledger.earnings.get_earnings(OTHER_COACH_ID) == 0

    async def test_students_cannot_finish(self, ledger):
        slot = await create_slot(ledger)
        await ledger.registry.book(slot, STUDENT_ID)

        with pytest.raises(AuthorizationError):
            await ledger.registry.mark_finished(slot, STUDENT_ID)

        assert not (await ledger.registry.get(slot.id)).is_finished

    async def test_failed_role_lookup_denies(self, ledger, store):
        slot = await create_slot(ledger)
        await ledger.registry.book(slot, STUDENT_ID)
        store.fail("get", USERS)

        with pytest.raises(AuthorizationError):
            await ledger.registry.mark_finished(slot, OTHER_COACH_ID)

    async def test_earnings_failure_does_not_fail_finishing(self, ledger, store):
        slot = await create_slot(ledger)
        await ledger.registry.book(slot, STUDENT_ID)
        store.fail("set", "coach_earnings", times=10)

        finished = await ledger.registry.mark_finished(slot, COACH_ID)
        await ledger.dispatcher.drain()

        assert finished.is_finished
        assert (await ledger.registry.get(slot.id)).is_finished


class TestAccrueOnBooking:
    """With the accrual point set to booking, finishing pays nothing more."""

    @pytest.fixture
    async def booking_ledger(self, store, users, clock):
        ledger = build_ledger(
            store,
            accrual_point=EarningsAccrualPoint.BOOK,
            earnings_retry_delay=0,
            clock=clock,
        )
        await ledger.start()
        yield ledger
        await ledger.shutdown()

    async def test_coach_is_paid_once(self, booking_ledger):
        slot = await create_slot(booking_ledger, credit_cost=15)

        await booking_ledger.registry.book(slot, STUDENT_ID)
        await booking_ledger.dispatcher.drain()
        assert await booking_ledger.earnings.get_earnings(COACH_ID) == 15

        await booking_ledger.registry.mark_finished(slot, COACH_ID)
        await booking_ledger.dispatcher.drain()
        assert await booking_ledger.earnings.get_earnings(COACH_ID) == 15


# ---------------------------------------------------------------------------
# Editing and Deleting
# ---------------------------------------------------------------------------

class TestUpdate:

    async def test_changing_times_rederives_the_label(self, ledger):
        slot = await create_slot(ledger)

        updated = await ledger.registry.update(
            slot,
            COACH_ID,
            start_time=at(11, day=20),
            end_time=at(12, 30, day=20),
        )

        assert updated.class_time == "11:00 AM - 12:30 PM"
        assert updated.start_time == datetime(2025, 3, 10, 11, 0, tzinfo=timezone.utc)
        stored = await ledger.registry.get(slot.id)
        assert stored.class_time == "11:00 AM - 12:30 PM"

    async def test_cost_and_name_can_change(self, ledger):
        slot = await create_slot(ledger)

        updated = await ledger.registry.update(
            slot,
            COACH_ID,
            credit_cost=35,
            instructor_name="Coach Jane",
        )

        assert updated.credit_cost == 35
        assert updated.instructor_name == "Coach Jane"

    async def test_no_changes_is_a_no_op(self, ledger, store):
        slot = await create_slot(ledger)
        writes_before = store.calls.count(("update", CLASSES))

        result = await ledger.registry.update(slot, COACH_ID)

        assert result == slot
        assert store.calls.count(("update", CLASSES)) == writes_before

    async def test_end_before_start_is_rejected(self, ledger):
        slot = await create_slot(ledger)

        with pytest.raises(ValueError):
            await ledger.registry.update(slot, COACH_ID, end_time=at(8))

    @pytest.mark.parametrize("credit_cost", [20.0, True, -1])
    async def test_invalid_cost_is_rejected(self, ledger, credit_cost):
        slot = await create_slot(ledger)

        with pytest.raises((TypeError, ValueError)):
            await ledger.registry.update(slot, COACH_ID, credit_cost=credit_cost)

        assert (await ledger.registry.get(slot.id)).credit_cost == 20

    async def test_students_cannot_edit(self, ledger):
        slot = await create_slot(ledger)

        with pytest.raises(AuthorizationError):
            await ledger.registry.update(slot, STUDENT_ID, credit_cost=1)


class TestDelete:

    async def test_creator_can_delete(self, ledger):
        slot = await create_slot(ledger)

        await ledger.registry.delete(slot, COACH_ID)

        with pytest.raises(NotFoundError):
            await ledger.registry.get(slot.id)
        assert ledger.registry.classes == []

    async def test_other_coach_can_delete(self, ledger):
        slot = await create_slot(ledger)

        await ledger.registry.delete(slot, OTHER_COACH_ID)

        assert ledger.registry.classes == []

    async def test_students_cannot_delete(self, ledger):
        slot = await create_slot(ledger)

        with pytest.raises(AuthorizationError):
            await ledger.registry.delete(slot, STUDENT_ID)

        assert (await ledger.registry.get(slot.id)).id == slot.id

    async def test_deleting_twice_reports_not_found(self, ledger):
        slot = await create_slot(ledger)
        await ledger.registry.delete(slot, COACH_ID)

        with pytest.raises(NotFoundError):
            await ledger.registry.delete(slot, COACH_ID)
