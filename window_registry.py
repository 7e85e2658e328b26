"""
Tracks the windows open in a session.

The registry owns the authoritative copy of every open window. Callers only
ever receive snapshots, so a window can change only through `open`, `update`,
`touch` and `close`, each of which stamps a sequence number and publishes the
matching event on the session bus.
"""
import logging
import threading
from typing import Optional

from data_models import ActionDefinition, Window, WindowClosed, WindowOpened, WindowUpdated
from event_bus import EventBus
from sequence_clock import SequenceClock
from tracer import trace


class NotFound(Exception):
    """Raised when a window or an action on it does not exist."""

    def __init__(self, message: str, window_id: str, action_id: Optional[str] = None):
        super().__init__(message)
        self.window_id = window_id
        self.action_id = action_id


class WindowRegistry:
    def __init__(self, clock: SequenceClock, bus: Optional[EventBus] = None, session_id: str = ""):
        self.clock = clock
        self.bus = bus
        self.session_id = session_id
        self._lock = threading.Lock()
        # Insertion order is opening order.
        self._windows: dict[str, Window] = {}

    def _publish(self, event) -> None:
        if self.bus is not None:
            self.bus.publish(event)

    @trace
    def open(self, window: Window) -> Window:
        """
        Opens `window`, replacing any open window with the same id.

        Returns:
            A snapshot of the stored window with its sequence stamps set.
        """
        with self._lock:
            seq = self.clock.next()
            replaced = self._windows.pop(window.id, None) is not None
            stored = window.model_copy(update={"created_at": seq, "updated_at": seq})
            self._windows[window.id] = stored
        if replaced:
            logging.info(f"Window '{window.id}' replaced in session '{self.session_id}'.")
        self._publish(WindowOpened(
            seq=seq, session_id=self.session_id, window_id=window.id,
            app_name=window.app_name, replaced=replaced,
        ))
        return stored.model_copy()

    @trace
    def close(self, window_id: str, summary: Optional[str] = None) -> bool:
        """Closes a window. Closing an unknown id does nothing and returns False."""
        with self._lock:
            if self._windows.pop(window_id, None) is None:
                return False
            seq = self.clock.next()
        self._publish(WindowClosed(seq=seq, session_id=self.session_id, window_id=window_id, summary=summary))
        return True

    @trace
    def touch(self, window_id: str) -> bool:
        """
        Marks a window as refreshed. Windows with a content provider re-render
        their content first.
        """
        with self._lock:
            window = self._windows.get(window_id)
            if window is None:
                return False
        content = window.content_provider() if window.content_provider else window.content
        return self._replace(window_id, {"content": content})

    @trace
    def update(self, window_id: str, **changes) -> bool:
        """Replaces fields of an open window (content, description, actions, options)."""
        allowed = {"content", "description", "actions", "options", "app_name"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update window fields: {', '.join(sorted(unknown))}")
        return self._replace(window_id, changes)

    def _replace(self, window_id: str, changes: dict) -> bool:
        with self._lock:
            window = self._windows.get(window_id)
            if window is None:
                return False
            seq = self.clock.next()
            self._windows[window_id] = window.model_copy(update={**changes, "updated_at": seq})
        self._publish(WindowUpdated(seq=seq, session_id=self.session_id, window_id=window_id))
        return True

    def get(self, window_id: str) -> Optional[Window]:
        with self._lock:
            window = self._windows.get(window_id)
        return window.model_copy() if window else None

    def list(self) -> list[Window]:
        with self._lock:
            return [window.model_copy() for window in self._windows.values()]

    def find_action(self, window_id: str, action_id: str) -> ActionDefinition:
        """
        Looks up an action declared by an open window.

        Raises:
            NotFound: The window is not open or does not declare the action.
        """
        window = self.get(window_id)
        if window is None:
            raise NotFound(f"Window '{window_id}' is not open.", window_id)
        action = window.find_action(action_id)
        if action is None:
            raise NotFound(f"Window '{window_id}' has no action '{action_id}'.", window_id, action_id)
        return action

    def __contains__(self, window_id: str) -> bool:
        with self._lock:
            return window_id in self._windows

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
