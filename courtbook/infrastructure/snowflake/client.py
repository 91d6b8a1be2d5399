"""
Snowflake database connection management.

Provides the connection context manager used by SnowflakeDocumentStore,
plus a mock connection that understands the store's statements so the
adapter can be exercised without a real database.

Most code never touches this module directly - it goes through the
DocumentStore protocol.
"""

import base64
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional, Protocol

logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...
    def close(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "COURTBOOK"
    schema: str = "LEDGER"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


def _load_private_key(key_bytes: bytes) -> bytes:
    """
    Convert a PEM private key to the DER bytes Snowflake expects.

    Snowflake requires the private key as a bytes object, not a file path.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    private_key = serialization.load_pem_private_key(
        key_bytes,
        password=None,  # No password on the key
        backend=default_backend()
    )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _connect_params(config: SnowflakeConfig) -> dict:
    """
    Build connector arguments, choosing the authentication method.

    Key-pair auth wins over password auth: base64 key (deployments), then
    key file (local), then password.
    """
    params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'role': config.role,
        'client_session_keep_alive': True,
    }

    if config.private_key_base64:
        logger.info("Using base64-encoded key-pair authentication for Snowflake")
        params['private_key'] = _load_private_key(base64.b64decode(config.private_key_base64))
    elif config.private_key_path:
        logger.info("Using key-pair authentication for Snowflake")
        with open(config.private_key_path, 'rb') as key_file:
            params['private_key'] = _load_private_key(key_file.read())
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        params['password'] = config.password
    else:
        raise SnowflakeConnectionError(
            "Either password or a private key must be provided"
        )

    return params


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Using a context manager ensures connections are always closed,
    even if an exception occurs.

    Usage:
        with get_snowflake_connection(config) as conn:
            cursor = conn.cursor()
            # do work
            conn.commit()
    """
    import snowflake.connector

    conn = None
    try:
        conn = snowflake.connector.connect(**_connect_params(config))

        logger.debug(
            "Established Snowflake connection",
            extra={
                "account": config.account,
                "database": config.database,
                "schema": config.schema,
            }
        )

        yield conn

    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}")

    finally:
        if conn:
            try:
                conn.close()
                logger.debug("Closed Snowflake connection")
            except Exception as e:
                logger.warning(
                    "Error closing Snowflake connection",
                    extra={"error": str(e)}
                )


# ---------------------------------------------------------------------------
# Mock Connection for Local Development
# ---------------------------------------------------------------------------

class MockSnowflakeCursor:
    """
    Mock Snowflake cursor for testing.

    Implements just enough of the cursor interface to support
    SnowflakeDocumentStore without a real database. Statements are
    recognized by pattern matching, which is simplified but sufficient
    for the handful of statements the store issues.
    """

    def __init__(self, storage: dict) -> None:
        self._storage = storage
        self._results: list = []
        self._rowcount: int = 0

    def execute(self, query: str, params: Optional[tuple] = None) -> 'MockSnowflakeCursor':
        logger.debug(
            "Mock cursor execute",
            extra={"query": query[:100], "params": params}
        )

        query_upper = " ".join(query.upper().split())
        self._results = []
        self._rowcount = 0

        if query_upper.startswith('CREATE TABLE'):
            pass
        elif 'MERGE INTO' in query_upper:
            self._handle_merge(params)
        elif query_upper.startswith('DELETE'):
            self._handle_delete(params)
        elif query_upper.startswith('SELECT DOC_ID, DATA'):
            self._handle_query(params)
        elif query_upper.startswith('SELECT DATA'):
            self._handle_get(params)
        elif query_upper.startswith('SELECT 1'):
            self._results = [(1,)]

        return self

    def _handle_merge(self, params: Optional[tuple]) -> None:
        """Upsert: (collection, doc_id, data_json, ...)."""
        if not params:
            return
        collection, doc_id, data_json = params[0], params[1], params[2]
        self._storage[(collection, doc_id)] = data_json
        self._rowcount = 1

    def _handle_delete(self, params: Optional[tuple]) -> None:
        if not params:
            return
        if self._storage.pop((params[0], params[1]), None) is not None:
            self._rowcount = 1

    def _handle_get(self, params: Optional[tuple]) -> None:
        if not params:
            return
        data_json = self._storage.get((params[0], params[1]))
        if data_json is not None:
            self._results = [(data_json,)]

    def _handle_query(self, params: Optional[tuple]) -> None:
        """Collection scan: (collection, field1, value1_json, field2, ...)."""
        if not params:
            return
        collection = params[0]
        pairs = list(zip(params[1::2], params[2::2]))

        for (stored_collection, doc_id), data_json in self._storage.items():
            if stored_collection != collection:
                continue
            data = json.loads(data_json)
            if all(field in data and data[field] == json.loads(value) for field, value in pairs):
                self._results.append((doc_id, data_json))

    def fetchone(self):
        if not self._results:
            return None
        return self._results[0]

    def fetchall(self) -> list:
        return self._results

    def close(self) -> None:
        pass

    @property
    def rowcount(self) -> int:
        return self._rowcount


class MockSnowflakeConnection:
    """
    Mock Snowflake connection storing rows in memory.

    Rows are {(collection, doc_id): data_json}, mirroring the documents
    table. Data is held as JSON text, the way VARIANT values come back
    from the connector.
    """

    def __init__(self) -> None:
        self._storage: dict[tuple[str, str], str] = {}
        self.commits = 0

    def cursor(self) -> MockSnowflakeCursor:
        return MockSnowflakeCursor(self._storage)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        logger.debug("Mock connection rollback")

    def close(self) -> None:
        logger.debug("Mock connection close")

    # Helper methods for testing
    def _row_count(self) -> int:
        return len(self._storage)

    def _clear(self) -> None:
        self._storage.clear()


@contextmanager
def get_mock_snowflake_connection(
    conn: Optional[MockSnowflakeConnection] = None,
) -> Generator[MockSnowflakeConnection, None, None]:
    """
    Provide a mock connection, reusing `conn` if given so data persists
    across operations.
    """
    conn = conn or MockSnowflakeConnection()
    try:
        yield conn
    finally:
        conn.close()
