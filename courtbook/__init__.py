"""
Courtbook - credit ledger and class booking for a tennis-coaching marketplace.

This package contains the complete application:
- core: Framework-agnostic ledger and booking logic
- infrastructure: Document store adapters (in-memory, Snowflake)
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
