"""Audit logging for the automation worker.

Append-only record of job lifecycle events: activations, safety violations,
executions, keeper errors and retries. Events are kept in memory and can
optionally be forwarded to an `AuditEventStore` for persistence.

All timestamps use timezone-aware UTC datetimes for consistency.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from keeper.persistence.interfaces import AuditEventStore
from keeper.types import Job


logger = logging.getLogger(__name__)

EventType = Literal[
    "job_activated",
    "job_executed",
    "job_failed",
    "job_retry_scheduled",
    "safety_violation",
    "dry_run",
    "global_pause",
    "global_resume",
    "keeper_error",
    "error",
]

Severity = Literal["debug", "info", "warning", "error"]

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class AuditEvent:
    """Structured audit event for a job attempt or outcome."""

    event_type: EventType
    message: str
    job_id: Optional[str] = None
    actor: str = "system"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: Severity = "info"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_job(
        cls,
        event_type: EventType,
        job: Job,
        message: str,
        *,
        severity: Severity = "info",
        context: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        return cls(
            event_type=event_type,
            message=message,
            job_id=job.id,
            severity=severity,
            context={"job_type": job.type, "status": job.status, "retries": job.retries, **(context or {})},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Create from dictionary."""
        data = dict(data)
        timestamp_value = data.get("timestamp")
        if isinstance(timestamp_value, str):
            ts = timestamp_value
            # Normalize common ISO 8601 variant with trailing 'Z' (UTC)
            if ts.endswith("Z"):
                ts = ts[:-1] + "+00:00"
            try:
                data["timestamp"] = datetime.fromisoformat(ts)
            except ValueError:
                data.pop("timestamp", None)
        return cls(**data)


class AuditLogger:
    """Audit sink: in-memory event log with optional persistence."""

    def __init__(self, store: Optional[AuditEventStore] = None) -> None:
        self.events: list[AuditEvent] = []
        self._store = store

    def record(self, event: AuditEvent) -> None:
        """Record an audit event."""
        self.events.append(event)
        logger.log(_LOG_LEVELS[event.severity], f"[audit] {event.event_type} job={event.job_id}: {event.message}")
        if self._store is not None:
            self._store.log_event(
                event_type=event.event_type,
                message=event.message,
                severity=event.severity,
                job_id=event.job_id,
                actor=event.actor,
                event_time=event.timestamp,
                context_json=json.dumps(event.context, default=str),
            )

    def get_events(
        self,
        event_type: Optional[EventType] = None,
        severity: Optional[Severity] = None,
        job_id: Optional[str] = None,
    ) -> list[AuditEvent]:
        """Get filtered audit events."""
        return [
            e
            for e in self.events
            if (event_type is None or e.event_type == event_type)
            and (severity is None or e.severity == severity)
            and (job_id is None or e.job_id == job_id)
        ]

    def get_last(self, n: int) -> list[AuditEvent]:
        return self.events[-n:] if n > 0 else []

    def clear(self) -> None:
        """Clear all in-memory events (persisted events are untouched)."""
        self.events.clear()

    def to_json_list(self) -> list[dict[str, Any]]:
        """Export all events as JSON-serializable list."""
        return [event.to_dict() for event in self.events]
