"""
EventBus — in-process pub/sub for workflow lifecycle notifications.

The workflow runner publishes one event per lifecycle transition;
callers (CLI, server, tests) subscribe with a callback. The bus keeps
a bounded replay buffer so late subscribers and tests can inspect what
happened.

Thread safety model
───────────────────
- ``_lock`` protects ``_seq``, ``_buffer`` and ``_subscribers``.
- Subscriber callbacks run outside the lock. A callback that raises
  is logged and skipped; it never breaks the run.

Event standard
──────────────
Every event carries::

    seq    monotonic sequence number
    ts     wall-clock timestamp
    type   one of EventType
    key    step display name, or the workflow name
    data   event-specific payload (durations, counts, errors)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"


@dataclass(frozen=True)
class WorkflowEvent:
    """One published lifecycle event."""

    seq: int
    ts: float
    type: EventType
    key: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "ts": self.ts,
            "type": str(self.type),
            "key": self.key,
            "data": dict(self.data),
        }


Subscriber = Callable[[WorkflowEvent], None]


class EventBus:
    """Thread-safe, in-process pub/sub with a bounded replay buffer."""

    def __init__(self, *, buffer_size: int = 500) -> None:
        self._lock = threading.Lock()
        self._seq: int = 0
        self._buffer: deque[WorkflowEvent] = deque(maxlen=buffer_size)
        self._subscribers: list[Subscriber] = []

    # ── Properties ──────────────────────────────────────────────

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ── Subscribing ─────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    # ── Publishing ──────────────────────────────────────────────

    def publish(
        self,
        event_type: EventType | str,
        *,
        key: str = "",
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        """Broadcast an event to every subscriber."""
        with self._lock:
            self._seq += 1
            event = WorkflowEvent(
                seq=self._seq,
                ts=time.time(),
                type=EventType(event_type),
                key=key,
                data=data or {},
            )
            self._buffer.append(event)
            subscribers = list(self._subscribers)

        # Deliver outside the lock
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event subscriber %r failed on %s: %s", callback, event.type, e)

        logger.debug("event %s key=%s", event.type, key or "-")
        return event

    # ── Replay ──────────────────────────────────────────────────

    def events(self, since: int = 0) -> list[WorkflowEvent]:
        """Buffered events with ``seq > since``, oldest first."""
        with self._lock:
            return [e for e in self._buffer if e.seq > since]

    def types(self) -> list[str]:
        """Event types in the buffer, for compact assertions."""
        return [str(e.type) for e in self.events()]


class LoggingSubscriber:
    """Render lifecycle events through ``logging``.

    Step progress goes to INFO, failures to ERROR, and the final
    summary line to INFO (WARNING when the run aborted).
    """

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logging.getLogger("buildbox.workflow")

    def __call__(self, event: WorkflowEvent) -> None:
        data = event.data
        if event.type == EventType.WORKFLOW_STARTED:
            self._log.info("▶ %s: %d step(s)", event.key, data.get("total_steps", 0))
        elif event.type == EventType.STEP_STARTED:
            self._log.info(
                "[%d/%d] %s",
                data.get("index", 0),
                data.get("total", 0),
                event.key,
            )
        elif event.type == EventType.STEP_COMPLETED:
            self._log.info("✓ %s (%.2fs)", event.key, data.get("duration", 0.0))
        elif event.type == EventType.STEP_FAILED:
            self._log.error(
                "✗ %s (%.2fs): %s",
                event.key,
                data.get("duration", 0.0),
                data.get("error", ""),
            )
        elif event.type == EventType.STEP_SKIPPED:
            self._log.info("⊘ %s (%s)", event.key, data.get("reason", "skipped"))
        elif event.type == EventType.WORKFLOW_COMPLETED:
            level = logging.INFO if data.get("status") == "completed" else logging.WARNING
            self._log.log(
                level,
                "■ %s %s: %d run, %d failed in %.2fs",
                event.key,
                data.get("status", ""),
                data.get("steps_run", 0),
                data.get("steps_failed", 0),
                data.get("duration", 0.0),
            )
