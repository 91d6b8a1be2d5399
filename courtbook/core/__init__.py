"""
Core business logic for class booking and the credit ledger.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
or any infrastructure concerns. This separation means we can test the
ledger rules in isolation and swap storage backends if needed.
"""
