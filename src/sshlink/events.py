"""
Event system for sshlink.

Session lifecycle is reported as structured events. The same stream feeds
three kinds of sink:
- subscribers (callbacks registered with EventEmitter.subscribe)
- an in-memory EventCollector (testing, inspection)
- a JSONL file (persistent diagnostics)

Lifecycle event types, in the order a successful session fires them:
STATE_CHANGE*, HOST_KEY, AUTH*, CONNECTED, DATA_READY, ..., RESET,
DISCONNECTED. ERROR and AUTH_REQUIRED may appear in between.

All events include:
- timestamp: Unix timestamp in milliseconds
- event_type: One of EventType
- data: Event-specific structured data
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Session event types."""
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    ERROR = "ERROR"
    DATA_READY = "DATA_READY"
    RESET = "RESET"
    STATE_CHANGE = "STATE_CHANGE"
    HOST_KEY = "HOST_KEY"
    AUTH = "AUTH"
    XFER_RATE = "XFER_RATE"
    KEEPALIVE_SENT = "KEEPALIVE_SENT"


EventCallback = Callable[["Event"], None]


@dataclass
class Event:
    """
    A single session event.

    - event_type: The category of event
    - timestamp: When the event occurred (Unix ms)
    - data: Event-specific structured data
    """
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise event to JSON string."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise event from JSON string."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """Collects events in memory for testing and inspection."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        """Add an event to the collection."""
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return collected events (copy)."""
        return list(self._events)

    @property
    def types(self) -> list[str]:
        """Return the event types in emission order."""
        return [e.event_type for e in self._events]

    def clear(self) -> None:
        """Clear all collected events."""
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """Writes events to a JSONL file, one JSON object per line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        """Open the log file for appending."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        """Close the log file."""
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        """Write an event to the log file."""
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Dispatches events to subscribers, a collector and a JSONL file.

    Subscribers run synchronously, in subscription order, before emit()
    returns. A subscriber may call back into the session (for instance to
    disconnect on a host key error); the session re-checks its state after
    every emit for that reason.

    A subscriber that raises is logged and skipped so one faulty observer
    cannot stall the state machine.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None
        self._subscribers: list[tuple[str | None, EventCallback]] = []

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)
            self._jsonl_writer.open()

    @property
    def collector(self) -> EventCollector | None:
        return self._collector

    def subscribe(
        self,
        callback: EventCallback,
        event_type: str | EventType | None = None,
    ) -> Callable[[], None]:
        """
        Register a callback for one event type, or all types when None.

        Returns:
            A function that removes the subscription.
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value
        entry = (event_type, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create and emit an event.

        Args:
            event_type: The type of event
            **data: Event-specific data

        Returns:
            The created event
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)

        if self._collector:
            self._collector.emit(event)

        if self._jsonl_writer:
            self._jsonl_writer.emit(event)

        # Snapshot: a subscriber may unsubscribe while we iterate.
        for wanted, callback in list(self._subscribers):
            if wanted is not None and wanted != event_type:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type)

        return event

    def close(self) -> None:
        """Close any open resources."""
        if self._jsonl_writer:
            self._jsonl_writer.close()
            self._jsonl_writer = None


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Read all events from a JSONL file."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(Event.from_json(line))

    return events
