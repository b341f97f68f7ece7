"""Durable conversation thread storage.

Exports:
    ConversationStore: Abstract interface consumed by the message relay
    DuckDBConversationStore: DuckDB implementation used in production
"""
from .base import ConversationStore
from .duckdb_store import DuckDBConversationStore

__all__ = ["ConversationStore", "DuckDBConversationStore"]
