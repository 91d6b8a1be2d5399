"""
Document store factory and in-memory store.

The in-memory store backs mock mode: local development and tests run the
whole ledger without provisioning Snowflake. It behaves like the real
store where the ledger can observe it:
- documents are copied in and out, so callers can't mutate stored state
- every call yields to the event loop, like a network round-trip would
- collection listeners receive a full snapshot after every write
"""

import asyncio
import copy
import logging
from typing import Any, Optional, Sequence
from uuid import uuid4

from ...core.ledger.errors import PersistenceError
from ...core.ledger.store import (
    ChangeListener,
    Document,
    DocumentStore,
    FieldFilter,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """
    Dictionary-backed DocumentStore.

    Not suitable for production, but perfect for:
    - Local development
    - Unit tests
    - CI/CD environments
    """

    def __init__(self) -> None:
        # {collection: {doc_id: data}}
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: dict[str, list[ChangeListener]] = {}

        logger.info("Initialized in-memory document store")

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        await asyncio.sleep(0)
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        await asyncio.sleep(0)
        documents = self._collections.setdefault(collection, {})
        if merge and doc_id in documents:
            documents[doc_id].update(copy.deepcopy(data))
        else:
            documents[doc_id] = copy.deepcopy(data)
        self._notify(collection)

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        documents = self._collections.get(collection, {})
        if doc_id not in documents:
            raise PersistenceError(f"No document {collection}/{doc_id} to update")
        documents[doc_id].update(copy.deepcopy(data))
        self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.sleep(0)
        if self._collections.get(collection, {}).pop(doc_id, None) is not None:
            self._notify(collection)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> list[Document]:
        await asyncio.sleep(0)
        return [
            Document(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
            if all(f.matches(data) for f in filters)
        ]

    def subscribe(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        self._listeners.setdefault(collection, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(collection, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: str) -> None:
        listeners = self._listeners.get(collection)
        if not listeners:
            return

        snapshot = [
            Document(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
        ]
        for listener in list(listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Document listener failed", extra={"collection": collection})

    # Helper methods for testing
    def _document_count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))

    def _clear(self) -> None:
        for documents in self._collections.values():
            documents.clear()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_document_store(
    config=None,
    mock_mode: bool = False,
    table: str = "ledger_documents",
) -> DocumentStore:
    """
    Create the document store based on configuration.

    Args:
        config: SnowflakeConfig (required if not mock_mode)
        mock_mode: If True, return an in-memory store
        table: Snowflake table holding all collections

    Returns:
        DocumentStore implementation (Snowflake or in-memory)
    """
    if mock_mode:
        return InMemoryDocumentStore()

    if config is None:
        raise ValueError("config is required when not in mock mode")

    from ..snowflake.documents import SnowflakeDocumentStore
    return SnowflakeDocumentStore(config, table=table)
