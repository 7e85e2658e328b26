import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from action_agent import ActionHandlerRegistry
from builtin_apps import FileExplorerApp
from data_models import LLMResponse, TokenUsage
from llm_client import LLMClient
from session_manager import SessionManager
from session_models import ActiveSession


class ScriptedLLMClient(LLMClient):
    """An LLMClient that replays canned replies and records what it was sent."""

    def __init__(self, replies=()):
        self._lock = threading.Lock()
        self.replies = list(replies)
        self.calls = []

    def send(self, messages):
        with self._lock:
            self.calls.append(messages)
            reply = self.replies.pop(0) if self.replies else "OK."
        if isinstance(reply, LLMResponse):
            return reply
        return LLMResponse(
            success=True,
            content=reply,
            model="scripted-model",
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )


@pytest.fixture
def scripted_llm():
    """Factory fixture: scripted_llm(["reply 1", "reply 2"])."""
    return ScriptedLLMClient


@pytest.fixture
def sandbox(tmp_path):
    """A small directory tree for the file explorer."""
    root = tmp_path / "sandbox"
    (root / "docs").mkdir(parents=True)
    (root / "notes.txt").write_text("hello from notes", encoding="utf-8")
    (root / "docs" / "readme.md").write_text("# Readme", encoding="utf-8")
    return root


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


@pytest.fixture
def session():
    active = ActiveSession.create("test-session", system_prompt="You are a test agent.", max_items=20, max_logs=20)
    yield active
    active.dispose()


@pytest.fixture
def make_manager(sandbox):
    """Factory fixture building a SessionManager with a file explorer and a scripted model."""
    managers = []

    def make(replies=(), llm_client=None, **kwargs):
        llm = llm_client if llm_client is not None else ScriptedLLMClient(replies)
        manager = SessionManager(
            llm_client=llm,
            registry=ActionHandlerRegistry(),
            apps=[FileExplorerApp(str(sandbox))],
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield make
    for manager in managers:
        manager.shutdown()
