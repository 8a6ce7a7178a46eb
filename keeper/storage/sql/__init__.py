"""SQL storage for the worker.

Notes
- Works against SQLite (single host) and PostgreSQL.
- We avoid logging connection URLs to prevent accidental secret leakage.
"""

from .config import SqlConfig
from .job_store import SqlJobStore

__all__ = ["SqlConfig", "SqlJobStore"]
