"""
Test doubles shared across the suite.

FlakyStore wraps the in-memory store and makes chosen operations raise
PersistenceError a set number of times; FakeClock hands out strictly
increasing timestamps.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from courtbook.core.ledger import PersistenceError
from courtbook.core.ledger.store import Document, FieldFilter
from courtbook.infrastructure.documents import InMemoryDocumentStore

COACH_ID = "coach-1"
OTHER_COACH_ID = "coach-2"
STUDENT_ID = "student-1"
OTHER_STUDENT_ID = "student-2"


class FakeClock:
    """Deterministic clock; every call is one second after the previous one."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FlakyStore:
    """
    DocumentStore wrapper that fails chosen operations.

    `fail("set", "classes", times=2)` makes the next two `set` calls on the
    classes collection raise PersistenceError; `after=1` lets one call
    through first. Everything else is passed through to the wrapped store.
    """

    def __init__(self, inner: InMemoryDocumentStore) -> None:
        self.inner = inner
        self._failures: dict[tuple[str, str], tuple[int, int]] = {}
        self.calls: list[tuple[str, str]] = []

    def fail(self, operation: str, collection: str, times: int = 1, after: int = 0) -> None:
        self._failures[(operation, collection)] = (after, times)

    def _check(self, operation: str, collection: str) -> None:
        self.calls.append((operation, collection))
        skip, remaining = self._failures.get((operation, collection), (0, 0))
        if skip > 0:
            self._failures[(operation, collection)] = (skip - 1, remaining)
        elif remaining > 0:
            self._failures[(operation, collection)] = (0, remaining - 1)
            raise PersistenceError(f"Injected {operation} failure on {collection}")

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        self._check("get", collection)
        return await self.inner.get(collection, doc_id)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        self._check("set", collection)
        await self.inner.set(collection, doc_id, data, merge=merge)

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._check("update", collection)
        await self.inner.update(collection, doc_id, data)

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check("delete", collection)
        await self.inner.delete(collection, doc_id)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        self._check("add", collection)
        return await self.inner.add(collection, data)

    async def query(self, collection: str, filters: Sequence[FieldFilter] = ()) -> list[Document]:
        self._check("query", collection)
        return await self.inner.query(collection, filters)

    def subscribe(self, collection: str, listener):
        return self.inner.subscribe(collection, listener)
