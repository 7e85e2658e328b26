"""
Provides the action execution layer of the engine.

This module is the engine's "hands": the orchestrator hands it a validated
action call and it dispatches the call to the handler registered for the
action's kind. Handlers are small strategy objects, either ActionHandler
subclasses or plain callables taking an ActionContext, registered on an
ActionHandlerRegistry.

Every dispatch returns a standardized ActionResult. A handler that raises is
reported as a failed result, never as an exception, so a misbehaving
application cannot break a session's turn.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from data_models import ActionContext, ActionDefinition, ActionParamSchema, ActionResult, Window
from tracer import trace

# Every closable window accepts `close` whether or not it declares it.
CLOSE_ACTION_ID = "close"
CLOSE_ACTION = ActionDefinition(
    id=CLOSE_ACTION_ID,
    label="Close",
    description="Close this window.",
    params=ActionParamSchema.object_({
        "summary": ActionParamSchema.string(required=False, description="What was accomplished."),
    }),
)


class ActionHandler(ABC):
    """A strategy that carries out one kind of action."""

    @abstractmethod
    def execute(self, context: ActionContext) -> ActionResult:
        ...


class FunctionActionHandler(ActionHandler):
    """Adapts a plain `(ActionContext) -> ActionResult` callable."""

    def __init__(self, func: Callable[[ActionContext], ActionResult]):
        self.func = func

    def execute(self, context: ActionContext) -> ActionResult:
        return self.func(context)

    def __repr__(self) -> str:
        return f"FunctionActionHandler({getattr(self.func, '__name__', self.func)!r})"


HandlerLike = Union[ActionHandler, Callable[[ActionContext], ActionResult]]


class ActionHandlerRegistry:
    """Maps action kinds to the handlers that execute them."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, kind: str, handler: HandlerLike) -> None:
        if not isinstance(handler, ActionHandler):
            if not callable(handler):
                raise TypeError(f"Handler for '{kind}' must be an ActionHandler or a callable.")
            handler = FunctionActionHandler(handler)
        with self._lock:
            if kind in self._handlers:
                logging.warning(f"Replacing the handler registered for action kind '{kind}'.")
            self._handlers[kind] = handler

    def handler(self, kind: str):
        """Decorator form of `register` for plain functions."""
        def decorator(func):
            self.register(kind, func)
            return func
        return decorator

    def unregister(self, kind: str) -> bool:
        with self._lock:
            return self._handlers.pop(kind, None) is not None

    def get(self, kind: str) -> Optional[ActionHandler]:
        with self._lock:
            return self._handlers.get(kind)

    def kinds(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, kind: str) -> bool:
        with self._lock:
            return kind in self._handlers


# Handlers registered at import time by the built-in applications.
ACTION_REGISTRY = ActionHandlerRegistry()


def resolve_action(window: Window, action_id: str) -> Optional[ActionDefinition]:
    """
    Finds the definition of `action_id` on `window`, including the reserved
    close action. Returns None if the window does not accept the action.
    """
    action = window.find_action(action_id)
    if action is not None:
        return action
    if action_id == CLOSE_ACTION_ID and window.options.closable:
        return CLOSE_ACTION
    return None


def _close_window(context: ActionContext) -> ActionResult:
    return ActionResult.close(summary=context.get("summary"))


@trace
def execute_action(
    registry: ActionHandlerRegistry,
    definition: ActionDefinition,
    context: ActionContext,
) -> ActionResult:
    """
    Dispatches a validated action call to its handler.

    Args:
        registry: Where handlers are looked up by `definition.handler_kind`.
        definition: The resolved action definition.
        context: The call context with validated parameters.

    Returns:
        The handler's ActionResult, or a failed result if no handler is
        registered or the handler raised.
    """
    if definition is CLOSE_ACTION:
        return _close_window(context)

    handler = registry.get(definition.handler_kind)
    if handler is None and definition.handler_kind == CLOSE_ACTION_ID:
        return _close_window(context)
    if handler is None:
        logging.warning(f"No handler registered for action kind '{definition.handler_kind}'.")
        return ActionResult.fail(f"No handler is registered for '{definition.handler_kind}'.")

    try:
        result = handler.execute(context)
    except Exception as e:
        logging.exception(f"Handler for '{context.window_id}.{context.action_id}' raised.")
        return ActionResult.fail(f"Action '{context.action_id}' failed: {e}")

    if not isinstance(result, ActionResult):
        logging.error(f"Handler for '{definition.handler_kind}' returned {type(result).__name__}, not ActionResult.")
        return ActionResult.fail(f"Action '{context.action_id}' returned an invalid result.")
    return result
