"""
Document store interface consumed by the ledger.

The ledger talks to a document database (collections of JSON-like
documents keyed by id). Using a Protocol here means the managers don't know
or care whether documents live in Snowflake or in memory for tests. They
just need get/set/update/delete/query plus change notifications.

Adapters raise PersistenceError for backend failures. A missing document is
not a failure: `get` returns None.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence


# Collection names are the wire contract with existing data
USERS = "users"
CLASSES = "classes"
CREDIT_TRANSACTIONS = "credit_transactions"
COACH_EARNINGS = "coach_earnings"
EARNING_TRANSACTIONS = "earning_transactions"
BOOKINGS = "bookings"


def coach_students(coach_id: str) -> str:
    """Sub-collection holding a coach's student roster."""
    return f"{USERS}/{coach_id}/students"


@dataclass(frozen=True)
class Document:
    """A stored document and its id."""
    id: str
    data: dict[str, Any]


@dataclass(frozen=True)
class FieldFilter:
    """Equality filter on a top-level document field."""
    field: str
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        return self.field in data and data[self.field] == self.value


ChangeListener = Callable[[list[Document]], None]
Unsubscribe = Callable[[], None]


class DocumentStore(Protocol):
    """
    Interface for document persistence.

    All data methods are async: every call may suspend on network I/O.
    `subscribe` is synchronous; the listener receives the full collection
    snapshot whenever it changes and may be invoked from another thread.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Return the document data, or None if it doesn't exist."""
        ...

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        """Create or replace a document (or merge fields into it)."""
        ...

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Merge fields into an existing document. Fails if it doesn't exist."""
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document. Deleting a missing document is not an error."""
        ...

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        ...

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> list[Document]:
        """Return every document in the collection matching all filters."""
        ...

    def subscribe(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        """Register for collection snapshots. Returns an unsubscribe callable."""
        ...
