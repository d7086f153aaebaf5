"""
Stores and the batch upsert engine.

This module contains:
- The SyncStore interface and transient-error classification
- PostgreSQL and in-memory stores
- The batch upsert engine with its retry policy
"""

from .base import UPSERT_KEY, SyncStore, is_transient_error
from .batch import BatchUpsertEngine, RetryPolicy, UpsertResult
from .memory import MemoryStore
from .postgres import PostgresStore, get_connection

__all__ = [
    "UPSERT_KEY",
    "SyncStore",
    "is_transient_error",
    "BatchUpsertEngine",
    "RetryPolicy",
    "UpsertResult",
    "MemoryStore",
    "PostgresStore",
    "get_connection",
]
