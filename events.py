"""
Handles all SocketIO event logic for the application.

This module centralizes the real-time communication between the client (UI)
and the engine: it maps each connected client to a session, runs turns in
background tasks, and forwards every event published on a session's bus to
that client. It is designed to be registered by the main app.py script.
"""
import logging
import threading

from flask import request
from flask_socketio import SocketIO

from data_models import SessionEvent
from session_manager import SessionManager, SessionNotFound
from tracer import global_tracer, trace

# --- Module-level state ---
# A reference to the SessionManager initialized in app.py
_manager: SessionManager | None = None
# Cancellation flags of turns in flight, keyed by session_id.
cancel_events: dict[str, threading.Event] = {}


class SocketIONotifier:
    """
    Forwards session events to clients.

    Subscribed to every session bus; each event is emitted as 'session_event'
    to the room named after its session id, which is the room Socket.IO puts
    the session's client in on connect.
    """

    def __init__(self, socketio: SocketIO):
        self.socketio = socketio

    def __call__(self, event: SessionEvent) -> None:
        self.socketio.emit("session_event", event.model_dump(mode="json"), to=event.session_id)


def _emit_error(socketio: SocketIO, session_id: str, message: str) -> None:
    socketio.emit("log_message", {"type": "error", "data": message}, to=session_id)


@trace
def _run_task(socketio: SocketIO, manager: SessionManager, session_id: str, prompt: str) -> None:
    """Runs one turn in the background and reports its outcome to the client."""
    cancel_event = threading.Event()
    cancel_events[session_id] = cancel_event
    try:
        response = manager.interact(session_id, prompt, cancel_event=cancel_event)
        socketio.emit("interaction_result", response.model_dump(mode="json", exclude={"action_result": {"data"}}), to=session_id)
    except Exception as e:
        # interact() reports turn failures itself; anything here is a server bug.
        error_message = f"An error occurred while running the task: {e}"
        logging.exception(error_message)
        _emit_error(socketio, session_id, error_message)
    finally:
        if cancel_events.get(session_id) is cancel_event:
            cancel_events.pop(session_id, None)


@trace
def register_events(socketio: SocketIO, manager: SessionManager):
    """
    Registers all SocketIO event handlers with the main application.

    This function acts as the entry point for this module, setting up the
    global manager reference, subscribing the notifier to every session and
    connecting the event handlers.
    """
    global _manager
    _manager = manager
    manager.subscribe_all(SessionEvent, SocketIONotifier(socketio))

    @socketio.on("connect")
    @trace
    def handle_connect(auth=None) -> None:
        """Handles a new client connection by creating its session."""
        session_id = request.sid
        logging.info(f"Client connected: {session_id}")
        try:
            _manager.create_session(session_id)
            socketio.emit("session_created", {"session_id": session_id}, to=session_id)
        except Exception as e:
            logging.exception(f"Could not create session for {session_id}: {e}")
            _emit_error(socketio, session_id, "Failed to initialize session.")

    @socketio.on("disconnect")
    @trace
    def handle_disconnect(auth=None) -> None:
        """Handles client disconnection by cancelling its turn and closing its session."""
        session_id = request.sid
        logging.info(f"Client disconnected: {session_id}")
        cancel_event = cancel_events.pop(session_id, None)
        if cancel_event is not None:
            cancel_event.set()
        _manager.close_session(session_id)

    @socketio.on("start_task")
    @trace
    def handle_start_task(data: dict) -> None:
        """
        Receives a message from the client and runs a turn for it.

        Args:
            data: A dictionary of the form {"prompt": "This is the content of the prompt."}
        """
        session_id = request.sid
        if _manager.get_session(session_id) is None:
            _emit_error(socketio, session_id, "No active session. Please refresh.")
            return
        prompt = (data or {}).get("prompt")
        if not prompt:
            _emit_error(socketio, session_id, "The prompt is empty.")
            return
        # Run the turn in a background task to keep the server responsive.
        socketio.start_background_task(_run_task, socketio, _manager, session_id, prompt)

    @socketio.on("cancel_task")
    @trace
    def handle_cancel_task(data=None) -> None:
        """Abandons the model call of the client's turn in flight, if any."""
        cancel_event = cancel_events.get(request.sid)
        if cancel_event is not None:
            logging.info(f"Cancelling the turn in flight for {request.sid}.")
            cancel_event.set()

    @socketio.on("open_app")
    @trace
    def handle_open_app(data: dict) -> None:
        """Opens a built-in application window, e.g. {"app": "file_explorer", "target": "docs"}."""
        session_id = request.sid
        data = data or {}
        try:
            _manager.open_app(session_id, data.get("app"), data.get("target"))
        except (KeyError, ValueError) as e:
            _emit_error(socketio, session_id, str(e))

    @socketio.on("request_windows")
    @trace
    def handle_request_windows(data=None) -> None:
        session_id = request.sid
        try:
            windows = _manager.get_windows(session_id)
        except SessionNotFound:
            _emit_error(socketio, session_id, "No active session. Please refresh.")
            return
        payload = [window.model_dump(mode="json", include={"id", "app_name", "created_at", "updated_at"}) for window in windows]
        socketio.emit("windows_update", {"windows": payload}, to=session_id)

    @socketio.on("request_activity")
    @trace
    def handle_request_activity(data=None) -> None:
        session_id = request.sid
        try:
            entries = _manager.get_activity(session_id)
        except SessionNotFound:
            _emit_error(socketio, session_id, "No active session. Please refresh.")
            return
        socketio.emit("activity_update", {"entries": [entry.model_dump(mode="json") for entry in entries]}, to=session_id)

    @socketio.on("reset_tracer")
    @trace
    def handle_reset_tracer(data=None):
        """Handles a request from the scenario runner to reset the global tracer."""
        logging.info("Received request to reset global tracer.")
        global_tracer.reset()

    @socketio.on("get_trace_log")
    @trace
    def handle_get_trace_log(data=None):
        """
        Handles a request from the scenario runner to get the trace log
        and sends it back.
        """
        logging.info("Received request to get trace log.")
        session_id = request.sid
        trace_log = global_tracer.get_trace()
        socketio.emit("trace_log_response", {"trace": trace_log}, to=session_id)
