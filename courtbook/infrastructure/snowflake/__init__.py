"""
Snowflake document store.

Implements the DocumentStore protocol from core.ledger.store on top of a
single VARIANT table.
"""

from .client import SnowflakeConfig, SnowflakeConnectionError, get_snowflake_connection
from .documents import SnowflakeDocumentStore

__all__ = [
    "SnowflakeConfig",
    "SnowflakeConnectionError",
    "SnowflakeDocumentStore",
    "get_snowflake_connection",
]
