"""Storage implementations of the persistence interfaces."""

from .memory_store import ExecutionRecord, InMemoryJobStore
from .sql import SqlConfig, SqlJobStore

__all__ = ["ExecutionRecord", "InMemoryJobStore", "SqlConfig", "SqlJobStore"]
