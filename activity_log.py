"""
A bounded, human-readable record of what happened in a session.

The log listens on the session bus and turns the events a person would care
about (actions completed or rejected, windows opened or closed) into short
lines such as `[12] file_explorer.open -> success (opened)`. Only the most
recent `max_logs` lines are kept.
"""
import threading
from collections import deque
from typing import Optional

from data_models import (
    ActionCompleted,
    ActionRejected,
    ActivityEntry,
    SessionEvent,
    WindowClosed,
    WindowOpened,
)
from event_bus import EventBus, Subscription


class ActivityLog:
    def __init__(self, max_logs: int):
        if max_logs < 1:
            raise ValueError("max_logs must be at least 1")
        self.max_logs = max_logs
        self._lock = threading.Lock()
        self._entries: deque[ActivityEntry] = deque(maxlen=max_logs)
        self._subscription: Optional[Subscription] = None

    def bind(self, bus: EventBus) -> None:
        """Starts recording events published on `bus`."""
        self.unbind()
        self._subscription = bus.subscribe(SessionEvent, self._on_event)

    def unbind(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _on_event(self, event: SessionEvent) -> None:
        text = describe_event(event)
        if text is not None:
            self.add(event.seq, text)

    def add(self, seq: int, text: str) -> ActivityEntry:
        entry = ActivityEntry(seq=seq, text=text)
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self) -> list[ActivityEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def describe_event(event: SessionEvent) -> Optional[str]:
    """Formats an event as a log line, or returns None for events the log ignores."""
    if isinstance(event, ActionCompleted):
        outcome = "success" if event.success else "failed"
        detail = event.summary if event.success else (event.message or event.summary)
        suffix = f" ({detail})" if detail else ""
        return f"[{event.seq}] {event.window_id}.{event.action_id} -> {outcome}{suffix}"
    if isinstance(event, ActionRejected):
        return f"[{event.seq}] {event.window_id}.{event.action_id} -> rejected ({event.error})"
    if isinstance(event, WindowOpened):
        verb = "reopened" if event.replaced else "opened"
        app = f" ({event.app_name})" if event.app_name else ""
        return f"[{event.seq}] {verb} window {event.window_id}{app}"
    if isinstance(event, WindowClosed):
        suffix = f": {event.summary}" if event.summary else ""
        return f"[{event.seq}] closed window {event.window_id}{suffix}"
    return None
