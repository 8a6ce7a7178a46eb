"""Automation engine.

This package defines the safety guard, price evaluation, retry backoff and the
executor/poller pair that drives limit order and DCA jobs.

The worker entrypoint lives in `keeper.automation.worker`.
"""

from .audit import AuditEvent, AuditLogger
from .executor import Executor, ExecutorConfig, JobOutcome
from .poller import DEFAULT_POLL_INTERVAL_MS, JobPoller
from .pricing import PriceEvaluator, PriceSource, PriceSourceError
from .retry import RetryEntry, RetryScheduler
from .rules import DEFAULT_SAFETY_CONFIG, TERMINAL_RULES, SafetyConfig, SafetyViolation
from .safety import SafetyContext, SafetyGuard, SafetyResult
from .settings import ConfigurationError, WorkerSettings

__all__ = [
    # Audit
    "AuditEvent",
    "AuditLogger",
    # Executor
    "Executor",
    "ExecutorConfig",
    "JobOutcome",
    "JobPoller",
    "DEFAULT_POLL_INTERVAL_MS",
    # Pricing
    "PriceEvaluator",
    "PriceSource",
    "PriceSourceError",
    # Retry
    "RetryEntry",
    "RetryScheduler",
    # Safety
    "DEFAULT_SAFETY_CONFIG",
    "TERMINAL_RULES",
    "SafetyConfig",
    "SafetyViolation",
    "SafetyContext",
    "SafetyGuard",
    "SafetyResult",
    # Settings
    "ConfigurationError",
    "WorkerSettings",
]
