"""In-process publish/subscribe bus for orchestration events."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger(__name__)

TEAM_SPAWNED = "team:spawned"
TEAM_EXECUTION_STARTED = "team:execution-started"
TEAM_COMPLETED = "team:completed"
TEAM_MERGED = "team:merged"
TEAM_STOPPED = "team:stopped"
TEAM_ERROR = "team:error"
AGENT_PROGRESS = "agent:progress"
AGENT_UNHEALTHY = "agent:unhealthy"
EMERGENCY_STOP = "emergency-stop"
PHASE_COMPLETED = "phase:completed"
WORKFLOW_COMPLETED = "workflow:completed"
WORKFLOW_FAILED = "workflow:failed"
SANDBOX_CREATED = "sandbox:created"
SANDBOX_DESTROYED = "sandbox:destroyed"
LIMIT_EXCEEDED = "limit-exceeded"
METRICS_UPDATED = "metrics:updated"

TOPICS = frozenset({
    TEAM_SPAWNED,
    TEAM_EXECUTION_STARTED,
    TEAM_COMPLETED,
    TEAM_MERGED,
    TEAM_STOPPED,
    TEAM_ERROR,
    AGENT_PROGRESS,
    AGENT_UNHEALTHY,
    EMERGENCY_STOP,
    PHASE_COMPLETED,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    SANDBOX_CREATED,
    SANDBOX_DESTROYED,
    LIMIT_EXCEEDED,
    METRICS_UPDATED,
})

WILDCARD = "*"


@dataclass(frozen=True)
class Event:
    topic: str
    payload: Mapping[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "event": self.topic,
            "data": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


Handler = Callable[[Event], None]


class EventBus:
    """Fan-out of immutable events to subscribers.

    Payloads are wrapped read-only, so a subscriber can observe orchestrator
    state but never mutate it. A failing handler is logged and skipped.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for a topic (or "*" for all). Returns an unsubscribe callable."""
        if topic != WILDCARD and topic not in TOPICS:
            raise ValueError(f"Unknown event topic: {topic}")
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, **payload) -> Event:
        if topic not in TOPICS:
            raise ValueError(f"Unknown event topic: {topic}")
        event = Event(topic=topic, payload=MappingProxyType(dict(payload)))
        with self._lock:
            handlers = list(self._handlers.get(topic, ())) + list(self._handlers.get(WILDCARD, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", topic)
        return event
