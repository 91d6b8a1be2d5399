"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- documents: Document store factory and the in-memory store
- snowflake: Snowflake-backed document store

These wrappers translate between external formats and our domain models.
"""
