"""
auth/events.py -- Authentication event publishing.

The auth service announces what happened (logins, refreshes, revocations,
registrations) to whoever is listening. The core only knows the
EventPublisher protocol; the broker, if any, lives behind it.

Two publishers ship here:
  LoggingEventPublisher   -- one structured log line per event on the
                             "authservice.events" logger. The default.
  RecordingEventPublisher -- keeps events in memory; tests assert on it.

Event payloads carry ids, identifiers and reasons only -- never a secret,
a password hash, or a raw token.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

logger = logging.getLogger("authservice.events")

ALLOWED_EVENT_TYPES = frozenset(
    {
        "login_success",
        "login_failure",
        "token_refreshed",
        "token_revoked",
        "user_registered",
    }
)


@dataclass(frozen=True)
class AuthEvent:
    event_type: str
    occurred_at: datetime
    subject_id: str | None = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.event_type not in ALLOWED_EVENT_TYPES:
            raise ValueError(
                f"Invalid event_type '{self.event_type}'. Must be one of: {', '.join(sorted(ALLOWED_EVENT_TYPES))}"
            )


class EventPublisher(Protocol):
    def publish(self, event: AuthEvent) -> None: ...


class LoggingEventPublisher:
    def publish(self, event: AuthEvent) -> None:
        logger.info(
            "%s subject=%s at=%s %s",
            event.event_type,
            event.subject_id,
            event.occurred_at.isoformat(),
            " ".join(f"{k}={v}" for k, v in sorted(event.metadata.items())),
        )


class RecordingEventPublisher:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[AuthEvent] = []

    def publish(self, event: AuthEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[AuthEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]
