"""
The public entry point of the engine.

SessionManager owns every live session and serializes access to each one:
every write to a session's state happens under that session's lock, and a
whole turn (render, model call, dispatch) holds the lock from start to end.
Turns of different sessions run in parallel; a slow model call only delays
later turns and window changes of its own session. Reads go through the
stores' own locks and never wait for a turn.

Turn-scoped failures never raise from this API. They come back as an
InteractionResponse with success=False.
"""
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional, Type

import config
from action_agent import ACTION_REGISTRY, ActionHandlerRegistry
from builtin_apps import AppLauncher
from context_renderer import ContextRenderer, RenderedDocument
from data_models import (
    ActivityEntry,
    ConversationItem,
    InteractionResponse,
    RenderOptions,
    SessionEvent,
    Window,
)
from event_bus import EventHandler, Subscription
from llm_client import LLMClient
from orchestrator import process_assistant_output, run_turn
from session_models import ActiveSession, TurnState
from tracer import trace


class SessionNotFound(KeyError):
    """Raised by session accessors for an id that has no live session."""


class SessionManager:
    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        registry: Optional[ActionHandlerRegistry] = None,
        render_options: Optional[RenderOptions] = None,
        apps: Iterable = (),
        max_items: int = config.MAX_ITEMS,
        max_logs: int = config.MAX_LOGS,
        model_workers: int = config.MODEL_WORKERS,
        launcher: bool = False,
    ):
        """
        Args:
            llm_client: The model collaborator. Turns fail cleanly without one.
            registry: Where action handlers are looked up; defaults to the
                shared ACTION_REGISTRY.
            render_options: The token budget for every render.
            apps: Built-in applications (e.g. FileExplorerApp) whose handlers
                are installed on the registry and whose windows can be opened
                with `open_app`.
            max_items: Conversation bound per session.
            max_logs: Activity log bound per session.
            model_workers: Size of the thread pool running model calls.
            launcher: Open a non-closable launcher window listing `apps` in
                every new session, so the model can start them itself.
        """
        self.llm_client = llm_client
        self.registry = registry if registry is not None else ACTION_REGISTRY
        self.render_options = render_options or RenderOptions()
        self.max_items = max_items
        self.max_logs = max_logs
        self.apps = {app.name: app for app in apps}
        for app in self.apps.values():
            app.install(self.registry)
        self.launcher = AppLauncher(lambda: list(self.apps.values())) if launcher else None
        if self.launcher is not None:
            self.launcher.install(self.registry)

        self._lock = threading.Lock()
        self._sessions: dict[str, ActiveSession] = {}
        # Session-wide subscribers, attached to every session created from now on.
        self._global_handlers: list[tuple[Type[SessionEvent], EventHandler]] = []
        self._executor = ThreadPoolExecutor(max_workers=model_workers, thread_name_prefix="model-call")
        self._renderer = ContextRenderer()

    # --- Session lifecycle ---

    @trace
    def create_session(self, session_id: Optional[str] = None, system_prompt: Optional[str] = None) -> ActiveSession:
        """
        Creates a session. An existing session with the same id is returned
        unchanged.
        """
        session_id = session_id or uuid.uuid4().hex
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            session = ActiveSession.create(session_id, system_prompt, self.max_items, self.max_logs)
            for event_type, handler in self._global_handlers:
                session.bus.subscribe(event_type, handler)
            self._sessions[session_id] = session
        if self.launcher is not None:
            with session.lock:
                session.windows.open(self.launcher.create_window(session_id))
        logging.info(f"Created session '{session_id}'.")
        return session

    def get_session(self, session_id: str) -> Optional[ActiveSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> ActiveSession:
        return self.get_session(session_id) or self.create_session(session_id)

    def _require(self, session_id: str) -> ActiveSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    @trace
    def close_session(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        with session.lock:
            for app in self.apps.values():
                app.forget(session_id)
            session.dispose()
        logging.info(f"Closed session '{session_id}'.")
        return True

    def list_sessions(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def shutdown(self) -> None:
        for session_id in self.list_sessions():
            self.close_session(session_id)
        self._executor.shutdown(wait=False, cancel_futures=True)

    # --- Observers ---

    def subscribe(self, session_id: str, event_type: Type[SessionEvent], handler: EventHandler) -> Subscription:
        """Subscribes to events of one session."""
        return self._require(session_id).bus.subscribe(event_type, handler)

    def subscribe_all(self, event_type: Type[SessionEvent], handler: EventHandler) -> None:
        """Subscribes to events of every current and future session."""
        with self._lock:
            self._global_handlers.append((event_type, handler))
            sessions = list(self._sessions.values())
        for session in sessions:
            session.bus.subscribe(event_type, handler)

    # --- Windows ---

    @trace
    def open_window(self, session_id: str, window: Window) -> Window:
        session = self.get_or_create(session_id)
        with session.lock:
            return session.windows.open(window)

    def open_app(self, session_id: str, app_name: str, target: Optional[str] = None) -> Window:
        """Opens the window of a built-in application."""
        app = self.apps.get(app_name)
        if app is None:
            raise KeyError(f"Unknown application '{app_name}'.")
        return self.open_window(session_id, app.create_window(session_id, target))

    @trace
    def close_window(self, session_id: str, window_id: str, summary: Optional[str] = None) -> bool:
        session = self._require(session_id)
        with session.lock:
            return session.windows.close(window_id, summary=summary)

    def get_windows(self, session_id: str) -> list[Window]:
        return self._require(session_id).windows.list()

    # --- Reads ---

    def get_conversation(self, session_id: str) -> tuple[ConversationItem, ...]:
        return self._require(session_id).conversation.snapshot()

    def get_activity(self, session_id: str) -> list[ActivityEntry]:
        return self._require(session_id).activity.entries()

    def render_context(self, session_id: str, options: Optional[RenderOptions] = None) -> RenderedDocument:
        """Renders the session as the model would see it on its next turn."""
        session = self._require(session_id)
        return self._renderer.render(
            session.windows.list(),
            session.conversation.snapshot(),
            options or self.render_options,
            system_prompt=session.effective_system_prompt,
        )

    # --- Turns ---

    @trace
    def interact(
        self,
        session_id: str,
        text: str,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> InteractionResponse:
        """
        Runs one turn for a user message, creating the session if needed.

        Args:
            session_id: The session to act on.
            text: The user's message.
            cancel_event: Set from another thread to abandon the model call.
            timeout: Seconds to wait for the model; configuration default if None.

        Returns:
            The InteractionResponse of the turn.
        """
        if not text or not text.strip():
            return InteractionResponse.fail("The message is empty.")
        if self.llm_client is None:
            return InteractionResponse.fail("No language model is configured.")

        session = self.get_or_create(session_id)
        with session.lock:
            return run_turn(
                session, text, self.llm_client, self.registry, self._executor,
                self.render_options, cancel_event, timeout, apps=self.apps,
            )

    @trace
    def simulate(self, session_id: str, assistant_output: str) -> InteractionResponse:
        """
        Injects an assistant output without calling the model, then parses and
        dispatches it exactly as a real reply.
        """
        session = self.get_or_create(session_id)
        with session.lock:
            try:
                return process_assistant_output(session, assistant_output, self.registry, apps=self.apps)
            except Exception as e:
                error_message = f"An error occurred while processing the output: {e}"
                logging.exception(error_message)
                return InteractionResponse.fail(error_message)
            finally:
                session.state = TurnState.IDLE
