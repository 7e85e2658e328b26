"""
A synchronous, in-process publish/subscribe bus.

Each session owns one bus. Publishers hand it a SessionEvent; every handler
subscribed to that event's type (or one of its base classes) is called in
subscription order, on the publisher's thread, before `publish` returns.
A handler that raises is logged and skipped; the publisher never sees it.
"""
import logging
import threading
from typing import Callable, Optional, Type

from data_models import SessionEvent

EventHandler = Callable[[SessionEvent], None]


class Subscription:
    """A handle returned by `EventBus.subscribe`; unsubscribing twice is harmless."""

    def __init__(self, bus: "EventBus", event_type: Type[SessionEvent], handler: EventHandler):
        self._bus: Optional[EventBus] = bus
        self.event_type = event_type
        self.handler = handler

    @property
    def active(self) -> bool:
        return self._bus is not None

    def unsubscribe(self) -> None:
        bus, self._bus = self._bus, None
        if bus is not None:
            bus._remove(self)


class EventBus:
    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, event_type: Type[SessionEvent], handler: EventHandler) -> Subscription:
        """
        Registers `handler` for events of `event_type` and its subclasses.

        Args:
            event_type: The event class to listen for. Passing SessionEvent
                subscribes to everything published on this bus.
            handler: A callable receiving the event.

        Returns:
            A Subscription that can later be used to unsubscribe.
        """
        subscription = Subscription(self, event_type, handler)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    def publish(self, event: SessionEvent) -> None:
        # Handlers added or removed during delivery take effect on the next publish.
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if not isinstance(event, subscription.event_type):
                continue
            try:
                subscription.handler(event)
            except Exception:
                logging.exception(
                    f"Event handler {getattr(subscription.handler, '__name__', subscription.handler)!r} "
                    f"failed on '{event.kind}' (seq {event.seq}) in session '{self.session_id}'."
                )

    def clear(self) -> None:
        """Drops every subscription, e.g. when the session is closed."""
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._bus = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)
