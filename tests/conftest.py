"""
Shared fixtures for ledger tests.

Tests run against the real in-memory document store rather than mocks.
Failure injection goes through FlakyStore (see tests/support.py).
"""

import pytest

from courtbook.core.ledger import build_ledger
from courtbook.core.ledger.store import USERS
from courtbook.infrastructure.documents import InMemoryDocumentStore

from tests.support import (
    COACH_ID,
    OTHER_COACH_ID,
    OTHER_STUDENT_ID,
    STUDENT_ID,
    FakeClock,
    FlakyStore,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def store(memory_store) -> FlakyStore:
    return FlakyStore(memory_store)


@pytest.fixture
async def users(memory_store):
    """Two coaches and two students; the students start with 50 credits."""
    await memory_store.set(USERS, COACH_ID, {
        "firstName": "Jane",
        "lastName": "Smith",
        "role": "Coach",
    })
    await memory_store.set(USERS, OTHER_COACH_ID, {
        "firstName": "Omar",
        "lastName": "Diaz",
        "role": "Coach",
    })
    await memory_store.set(USERS, STUDENT_ID, {
        "firstName": "Sam",
        "lastName": "Lee",
        "role": "Student",
        "credits": 50,
    })
    await memory_store.set(USERS, OTHER_STUDENT_ID, {
        "firstName": "Ana",
        "lastName": "Ruiz",
        "role": "Student",
        "credits": 50,
    })


@pytest.fixture
async def ledger(store, users, clock):
    ledger = build_ledger(store, clock=clock, earnings_retry_delay=0)
    await ledger.start()
    yield ledger
    await ledger.shutdown()
