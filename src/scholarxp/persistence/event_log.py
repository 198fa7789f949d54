"""Append-only event log - the audit trail of every consensus decision.

Every finalize, escalation, hold, vote and review judgment produces an
event record appended to the log. Events are immutable once written.
The log serves as:
1. The audit trail for reviewing how a submission's XP was decided.
2. The feedback channel from the vote resolver to the metrics
   aggregator (REVIEW_VALIDATED / REVIEW_INVALIDATED subscribers).

Subscribers are invoked after the append; a failing subscriber is
logged and never undoes the append.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """Classification of consensus events."""
    REVIEW_SUBMITTED = "review_submitted"
    SUBMISSION_FINALIZED = "submission_finalized"
    SUBMISSION_ESCALATED = "submission_escalated"
    SUBMISSION_HELD = "submission_held"
    VOTE_CASE_OPENED = "vote_case_opened"
    VOTE_CAST = "vote_cast"
    VOTE_CASE_RESOLVED = "vote_case_resolved"
    # Feedback loop into reviewer metrics
    REVIEW_VALIDATED = "review_validated"
    REVIEW_INVALIDATED = "review_invalidated"
    # Administrative
    REVIEW_OVERRIDDEN = "review_overridden"
    XP_AWARDED = "xp_awarded"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the audit log.

    event_hash is the SHA-256 of the canonical JSON of the other
    fields, computed at creation time and re-verified on load.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, actor_id, payload,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


Subscriber = Callable[[EventRecord], None]


class EventLog:
    """Append-only event log with optional JSONL persistence.

    Events can only be appended, never modified or deleted. Appends are
    serialized so concurrent consensus runs cannot interleave lines.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._subscribers: dict[EventKind, list[Subscriber]] = {}
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def subscribe(self, kind: EventKind, callback: Subscriber) -> None:
        """Register callback to run after every appended event of kind."""
        with self._lock:
            self._subscribers.setdefault(kind, []).append(callback)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log and notify subscribers.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            self._events.append(event)
            self._event_ids.add(event.event_id)
            if self._storage_path:
                self._append_to_file(event)
            subscribers = list(self._subscribers.get(event.event_kind, ()))

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning(
                    "Subscriber failed for event %s (%s)",
                    event.event_id, event.event_kind.value, exc_info=True,
                )

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e.event_kind == kind]

    def events_for(self, key: str, value: str) -> list[EventRecord]:
        """Return events whose payload[key] equals value."""
        return [e for e in self.events() if e.payload.get(key) == value]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
