"""
Document store selection.

Mock mode stores documents in memory; otherwise documents live in
Snowflake. Both implement core.ledger.store.DocumentStore.
"""

from .client import InMemoryDocumentStore, create_document_store

__all__ = ["InMemoryDocumentStore", "create_document_store"]
