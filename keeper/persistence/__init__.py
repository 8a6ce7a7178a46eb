"""Persistence interfaces.

These protocols define the persistence boundary of the worker. Implementations
live in `keeper.storage`.
"""

from .interfaces import AuditEventStore, AuditSink, JobStore

__all__ = ["AuditEventStore", "AuditSink", "JobStore"]
