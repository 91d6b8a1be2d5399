"""
Application configuration using Pydantic settings.

Configuration comes from environment variables with sensible defaults.
Mock mode swaps Snowflake for an in-memory document store.
"""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
