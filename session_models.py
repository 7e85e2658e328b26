"""
Defines the high-level data structures for managing a live session.

This module contains the Pydantic model that bundles together everything a
single session owns: its sequence clock, event bus, conversation store,
window registry and activity log, plus the lock that serializes its turns.
"""
import threading
import time
from enum import Enum
from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

import config
from activity_log import ActivityLog
from conversation_store import ConversationStore
from data_models import SessionEvent
from event_bus import EventBus
from sequence_clock import SequenceClock
from window_registry import WindowRegistry


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING_ACTION = "dispatching_action"


class ActiveSession(BaseModel):
    """
    Represents a live session with all its associated stateful objects.

    This model acts as a "context object" that is passed through the core
    engine logic, providing one place to reach every session-specific
    component. Mutation happens only while `lock` is held.
    """

    # This config allows the model to hold non-pydantic objects such as the
    # EventBus and the lock without validation errors.
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    # Prepended to every rendered context; None uses config.SYSTEM_PROMPT.
    system_prompt: Optional[str] = None
    clock: SequenceClock
    bus: EventBus
    conversation: ConversationStore
    windows: WindowRegistry
    activity: ActivityLog
    # Re-entrant so a turn can call other locked session operations.
    lock: Any = Field(default_factory=threading.RLock, exclude=True)
    state: TurnState = TurnState.IDLE
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        session_id: str,
        system_prompt: Optional[str] = None,
        max_items: int = config.MAX_ITEMS,
        max_logs: int = config.MAX_LOGS,
    ) -> "ActiveSession":
        clock = SequenceClock()
        bus = EventBus(session_id)
        activity = ActivityLog(max_logs)
        activity.bind(bus)
        return cls(
            id=session_id,
            system_prompt=system_prompt,
            clock=clock,
            bus=bus,
            conversation=ConversationStore(max_items, clock, bus, session_id),
            windows=WindowRegistry(clock, bus, session_id),
            activity=activity,
        )

    @property
    def effective_system_prompt(self) -> str:
        return self.system_prompt if self.system_prompt is not None else config.SYSTEM_PROMPT

    def emit(self, event_type: Type[SessionEvent], **fields) -> SessionEvent:
        """Stamps the next sequence number on a new event and publishes it."""
        event = event_type(seq=self.clock.next(), session_id=self.id, **fields)
        self.bus.publish(event)
        return event

    def dispose(self) -> None:
        self.activity.unbind()
        self.bus.clear()
