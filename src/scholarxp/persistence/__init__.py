"""Persistence layer - review store, event log and storage retry."""

from scholarxp.persistence.event_log import EventLog, EventRecord, EventKind
from scholarxp.persistence.retry import RetryConfig, call_with_retry
from scholarxp.persistence.store import FinalizeResult, ReviewStore

__all__ = [
    "EventLog",
    "EventRecord",
    "EventKind",
    "RetryConfig",
    "call_with_retry",
    "FinalizeResult",
    "ReviewStore",
]
