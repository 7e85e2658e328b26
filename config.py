import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


# Token budget used when rendering a session's context for the model.
MAX_TOKENS = _env_int("ACI_MAX_TOKENS", 8000)
MIN_CONVERSATION_TOKENS = _env_int("ACI_MIN_CONVERSATION_TOKENS", 2000)
# Values <= 0 mean "shrink to half of MAX_TOKENS".
TRIM_TO_TOKENS = _env_int("ACI_TRIM_TO_TOKENS", 4000)

# Bounded per-session stores.
MAX_ITEMS = _env_int("ACI_MAX_ITEMS", 100)
MAX_LOGS = _env_int("ACI_MAX_LOGS", 50)

# Upper bound on a single model call before the turn is abandoned.
MODEL_TIMEOUT_SECONDS = float(os.getenv("ACI_MODEL_TIMEOUT_SECONDS", "120"))
MODEL_WORKERS = _env_int("ACI_MODEL_WORKERS", 8)

MODEL_NAME = os.getenv("ACI_MODEL_NAME", "gemini-2.5-flash")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")

SYSTEM_PROMPT = (
    "You operate application windows on behalf of the user. Each window lists the "
    "actions it accepts. To invoke one, answer with a single block of the form\n"
    '<tool_call>{"name": "action", "arguments": {"window_id": "...", '
    '"action_id": "...", "params": {...}}}</tool_call>\n'
    "Otherwise reply in plain text."
)

# Root directory exposed by the built-in file explorer window.
FILE_EXPLORER_ROOT = os.getenv(
    "ACI_FILE_EXPLORER_ROOT", os.path.join(os.path.dirname(os.path.abspath(__file__)), "sandbox")
)

DEBUG_MODE = os.getenv("ACI_DEBUG", "0") == "1"
LOG_LEVEL = os.getenv("ACI_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("ACI_LOG_FILE", "engine.log")

# Server configuration
SERVER_PORT = _env_int("ACI_SERVER_PORT", 5001)
