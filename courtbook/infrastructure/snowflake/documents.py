"""
Snowflake-backed document store.

All collections share one table:

    CREATE TABLE ledger_documents (
        collection STRING,
        doc_id     STRING,
        data       VARIANT,
        updated_at TIMESTAMP_NTZ,
        PRIMARY KEY (collection, doc_id)
    )

Documents are stored as VARIANT via PARSE_JSON. Timestamps are written as
ISO-8601 strings; the domain models parse them back into datetimes.

The connector is synchronous, so each operation runs in a worker thread
(asyncio.to_thread) to keep the event loop free. Change notifications are
produced in-process: after a write through this store, listeners on that
collection receive a fresh snapshot. Writes made by other processes are
picked up on the next ClassRegistry.refresh().
"""

import asyncio
import json
import logging
import re
from contextlib import AbstractContextManager
from datetime import date, datetime
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from ...core.ledger.errors import PersistenceError
from ...core.ledger.store import ChangeListener, Document, FieldFilter, Unsubscribe
from .client import SnowflakeConfig, get_snowflake_connection

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$.]*$")

ConnectionFactory = Callable[[], AbstractContextManager]


def _encode(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_variant_json(data: dict[str, Any]) -> str:
    return json.dumps(data, default=_encode, sort_keys=True)


def parse_variant_json(variant_data: Any) -> Optional[dict[str, Any]]:
    """
    Parse Snowflake VARIANT data that might be a string or already parsed.

    snowflake-connector-python returns VARIANT as a JSON string; other
    drivers may hand back a dict.
    """
    if variant_data is None:
        return None
    if isinstance(variant_data, str):
        return json.loads(variant_data)
    return dict(variant_data)


class SnowflakeDocumentStore:
    """
    DocumentStore over a single Snowflake VARIANT table.

    A connection is opened per operation through `connection_factory`
    (defaults to get_snowflake_connection). Tests pass a factory that
    yields a MockSnowflakeConnection.
    """

    def __init__(
        self,
        config: Optional[SnowflakeConfig] = None,
        table: str = "ledger_documents",
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        if connection_factory is None:
            if config is None:
                raise ValueError("config or connection_factory is required")
            connection_factory = lambda: get_snowflake_connection(config)  # noqa: E731

        self._table = table
        self._connect = connection_factory
        self._listeners: dict[str, list[ChangeListener]] = {}

    # -----------------------------------------------------------------------
    # DocumentStore
    # -----------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        return await self._run("get", self._get_sync, collection, doc_id)

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> None:
        await self._run("set", self._write_sync, collection, doc_id, data, merge, False)
        await self._notify(collection)

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await self._run("update", self._write_sync, collection, doc_id, data, True, True)
        await self._notify(collection)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._run("delete", self._delete_sync, collection, doc_id)
        await self._notify(collection)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
    ) -> list[Document]:
        return await self._run("query", self._query_sync, collection, list(filters))

    def subscribe(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        self._listeners.setdefault(collection, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(collection, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    # -----------------------------------------------------------------------
    # Administration
    # -----------------------------------------------------------------------

    async def ensure_table(self) -> None:
        """Create the documents table if it doesn't exist."""
        await self._run("ensure_table", self._ensure_table_sync)

    async def ping(self) -> bool:
        """Check the database answers a trivial query."""
        return await self._run("ping", self._ping_sync)

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    async def _run(self, operation: str, func: Callable, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(
                "Snowflake document operation failed",
                extra={"operation": operation, "table": self._table, "error": str(e)}
            )
            raise PersistenceError(f"Document store {operation} failed: {e}") from e

    async def _notify(self, collection: str) -> None:
        listeners = self._listeners.get(collection)
        if not listeners:
            return

        try:
            snapshot = await self.query(collection)
        except PersistenceError as e:
            logger.warning(
                "Could not load snapshot for listeners",
                extra={"collection": collection, "error": str(e)}
            )
            return

        for listener in list(listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Document listener failed", extra={"collection": collection})

    def _get_sync(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            return self._fetch(conn, collection, doc_id)

    def _fetch(self, conn, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        cursor = conn.cursor()
        try:
            cursor.execute(f"""
                SELECT data FROM {self._table}
                WHERE collection = %s AND doc_id = %s
            """, (collection, doc_id))
            row = cursor.fetchone()
            return parse_variant_json(row[0]) if row else None
        finally:
            cursor.close()

    def _write_sync(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool,
        must_exist: bool,
    ) -> None:
        with self._connect() as conn:
            document = dict(data)
            if merge:
                existing = self._fetch(conn, collection, doc_id)
                if existing is None and must_exist:
                    raise PersistenceError(f"No document {collection}/{doc_id} to update")
                if existing is not None:
                    existing.update(data)
                    document = existing

            cursor = conn.cursor()
            try:
                cursor.execute(f"""
                    MERGE INTO {self._table} AS target
                    USING (SELECT %s AS collection, %s AS doc_id, %s AS data_json) AS source
                    ON target.collection = source.collection
                       AND target.doc_id = source.doc_id
                    WHEN MATCHED THEN UPDATE SET
                        data = PARSE_JSON(source.data_json),
                        updated_at = CURRENT_TIMESTAMP()
                    WHEN NOT MATCHED THEN INSERT (collection, doc_id, data, updated_at)
                    VALUES (source.collection, source.doc_id,
                            PARSE_JSON(source.data_json), CURRENT_TIMESTAMP())
                """, (collection, doc_id, to_variant_json(document)))
                conn.commit()
            finally:
                cursor.close()

        logger.debug(
            "Wrote document",
            extra={"collection": collection, "doc_id": doc_id, "merge": merge}
        )

    def _delete_sync(self, collection: str, doc_id: str) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(f"""
                    DELETE FROM {self._table}
                    WHERE collection = %s AND doc_id = %s
                """, (collection, doc_id))
                conn.commit()
            finally:
                cursor.close()

    def _query_sync(self, collection: str, filters: list[FieldFilter]) -> list[Document]:
        clauses = ["collection = %s"]
        params: list[Any] = [collection]
        for f in filters:
            clauses.append("GET(data, %s) = PARSE_JSON(%s)")
            params.extend([f.field, json.dumps(f.value, default=_encode)])

        with self._connect() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(f"""
                    SELECT doc_id, data FROM {self._table}
                    WHERE {' AND '.join(clauses)}
                """, tuple(params))
                rows = cursor.fetchall()
            finally:
                cursor.close()

        documents = []
        for doc_id, variant in rows:
            data = parse_variant_json(variant)
            if data is not None:
                documents.append(Document(id=doc_id, data=data))
        return documents

    def _ensure_table_sync(self) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self._table} (
                        collection STRING NOT NULL,
                        doc_id STRING NOT NULL,
                        data VARIANT,
                        updated_at TIMESTAMP_NTZ,
                        PRIMARY KEY (collection, doc_id)
                    )
                """)
                conn.commit()
            finally:
                cursor.close()

    def _ping_sync(self) -> bool:
        with self._connect() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT 1")
                return cursor.fetchone() is not None
            finally:
                cursor.close()
