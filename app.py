"""
Server entry point: wires the engine to Flask and Flask-SocketIO.
"""
import atexit
import logging

from flask import Flask, jsonify
from flask_socketio import SocketIO

import config
from builtin_apps import FileExplorerApp
from events import register_events
from llm_client import GeminiClient
from session_manager import SessionManager

# --- Setup Logging ---
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[logging.FileHandler(config.LOG_FILE), logging.StreamHandler()],
)


def create_llm_client():
    if not config.GEMINI_API_KEY:
        logging.critical("GEMINI_API_KEY is not set; turns will fail until it is configured.")
        return None
    try:
        client = GeminiClient()
        logging.info(f"Gemini client configured for model '{config.MODEL_NAME}'.")
        return client
    except Exception as e:
        logging.critical(f"FATAL: Failed to configure the Gemini client. Error: {e}")
        return None


def create_app(manager: SessionManager | None = None) -> tuple[Flask, SocketIO, SessionManager]:
    """Builds the Flask app, its SocketIO server and the session manager behind them."""
    app = Flask(__name__)
    socketio = SocketIO(app, async_mode="threading")
    if manager is None:
        manager = SessionManager(llm_client=create_llm_client(), apps=[FileExplorerApp()], launcher=True)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "sessions": len(manager.list_sessions())})

    register_events(socketio, manager)
    return app, socketio, manager


if __name__ == "__main__":
    app, socketio, manager = create_app()
    atexit.register(manager.shutdown)
    logging.info(f"Starting engine server on http://127.0.0.1:{config.SERVER_PORT}")
    socketio.run(app, port=config.SERVER_PORT, debug=config.DEBUG_MODE, allow_unsafe_werkzeug=True)
