from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SqlConfig:
    """Connection configuration.

    `database_url` is a SQLAlchemy URL and should come from environment
    (DATABASE_URL). Do not log it.
    """

    database_url: str
    echo: bool = False
