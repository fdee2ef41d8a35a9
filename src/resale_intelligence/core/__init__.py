"""Core engine: request pipeline, parsers, market statistics, credentials and search.

This package is framework-agnostic. It has no dependency on MCP, FastMCP,
or the database layer; persistence and the credit ledger are injected.
"""
