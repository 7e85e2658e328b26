import threading
import time
from unittest.mock import MagicMock

import pytest

from action_agent import ActionHandlerRegistry
from builtin_apps import AppLauncher, FileExplorerApp
from data_models import (
    ActionCompleted,
    ActionDefinition,
    ActionInvoked,
    ActionParamSchema,
    ActionRejected,
    ActionResult,
    CreateCall,
    InteractionFailed,
    LLMResponse,
    MessageAppended,
    SessionEvent,
    Window,
    WindowClosed,
    WindowOptions,
    WindowOpened,
    WindowUpdated,
)
from llm_client import LLMClient
from orchestrator import call_model, process_assistant_output, run_turn
from response_parser import format_action_call, format_create_call
from session_models import TurnState


@pytest.fixture
def setup_mocks(session, executor):
    """
    Builds a session with one editor window, a handler registry and a mocked
    model, and records every event the session publishes.
    """
    registry = ActionHandlerRegistry()
    save_handler = MagicMock(return_value=ActionResult.ok(message="Saved.", summary="saved"))
    registry.register("editor.save", save_handler)

    session.windows.open(Window(
        id="editor",
        app_name="editor",
        content="draft",
        actions=[
            ActionDefinition(
                id="save",
                kind="editor.save",
                params=ActionParamSchema.object_({"name": ActionParamSchema.string()}),
            )
        ],
    ))

    events = []
    session.bus.subscribe(SessionEvent, events.append)

    llm = MagicMock(spec=LLMClient)
    return {
        "session": session,
        "registry": registry,
        "save_handler": save_handler,
        "llm": llm,
        "executor": executor,
        "events": events,
    }


def _reply(content):
    return LLMResponse(success=True, content=content, model="mock-model")


def _turn(mocks, text="please save", **kwargs):
    return run_turn(mocks["session"], text, mocks["llm"], mocks["registry"], mocks["executor"], **kwargs)


def test_plain_reply_commits_user_and_assistant_items(setup_mocks):
    # 1. ARRANGE
    mocks = setup_mocks
    mocks["llm"].send.return_value = _reply("Nothing to do.")

    # 2. ACT
    response = _turn(mocks, "hello")

    # 3. ASSERT
    assert response.success
    assert response.content == "Nothing to do."
    assert response.action is None
    items = mocks["session"].conversation.snapshot()
    assert [(i.role.value, i.content) for i in items] == [("user", "hello"), ("assistant", "Nothing to do.")]
    assert mocks["session"].state == TurnState.IDLE


def test_model_sees_rendered_windows_and_staged_message(setup_mocks):
    mocks = setup_mocks
    mocks["llm"].send.return_value = _reply("ok")

    _turn(mocks, "hello")

    messages = mocks["llm"].send.call_args.args[0]
    assert messages[0].role == "system"
    assert messages[0].content.startswith("You are a test agent.")
    assert '<window id="editor" app="editor">' in messages[0].content
    assert messages[-1].content == "hello"


def test_action_call_is_validated_dispatched_and_recorded(setup_mocks):
    # 1. ARRANGE
    mocks = setup_mocks
    mocks["llm"].send.return_value = _reply(format_action_call("editor", "save", {"name": "a.txt", "extra": 1}))

    # 2. ACT
    response = _turn(mocks)

    # 3. ASSERT
    assert response.success
    assert response.action.action_id == "save"
    assert response.action_result.summary == "saved"

    context = mocks["save_handler"].call_args.args[0]
    assert context.params == {"name": "a.txt"}
    assert context.window.id == "editor"

    kinds = [type(e) for e in mocks["events"]]
    assert kinds == [MessageAppended, MessageAppended, ActionInvoked, MessageAppended, ActionCompleted, WindowUpdated]
    seqs = [e.seq for e in mocks["events"]]
    assert seqs == sorted(seqs)
    assert seqs == list(range(seqs[0], seqs[0] + len(seqs)))

    last_item = mocks["session"].conversation.snapshot()[-1]
    assert last_item.kind == "action_result"
    assert last_item.content.startswith("Tool Result: ")


def test_model_failure_appends_nothing(setup_mocks):
    mocks = setup_mocks
    mocks["llm"].send.return_value = LLMResponse.fail("quota exceeded")

    response = _turn(mocks)

    assert not response.success
    assert response.error == "quota exceeded"
    assert mocks["session"].conversation.snapshot() == ()
    assert isinstance(mocks["events"][-1], InteractionFailed)
    assert mocks["session"].state == TurnState.IDLE


def test_model_exception_is_reported_as_failure(setup_mocks):
    mocks = setup_mocks
    mocks["llm"].send.side_effect = ConnectionError("network down")

    response = _turn(mocks)

    assert not response.success
    assert "network down" in response.error
    assert mocks["session"].conversation.snapshot() == ()


def test_timeout_abandons_the_model_call(setup_mocks):
    mocks = setup_mocks
    release = threading.Event()
    mocks["llm"].send.side_effect = lambda messages: release.wait(2) and _reply("late")

    started = time.monotonic()
    response = _turn(mocks, timeout=0.1)
    release.set()

    assert not response.success
    assert "did not respond" in response.error
    assert time.monotonic() - started < 1.5
    assert mocks["session"].conversation.snapshot() == ()


def test_cancellation_abandons_the_model_call(setup_mocks):
    mocks = setup_mocks
    release = threading.Event()
    mocks["llm"].send.side_effect = lambda messages: release.wait(2) and _reply("late")
    cancel_event = threading.Event()
    threading.Timer(0.1, cancel_event.set).start()

    response = _turn(mocks, cancel_event=cancel_event, timeout=5)
    release.set()

    assert not response.success
    assert "cancelled" in response.error
    assert mocks["session"].conversation.snapshot() == ()
    assert isinstance(mocks["events"][-1], InteractionFailed)


def test_malformed_action_markup_fails_without_dispatch(setup_mocks):
    mocks = setup_mocks
    mocks["llm"].send.return_value = _reply("<tool_call>{oops}</tool_call>")

    response = _turn(mocks)

    assert not response.success
    assert "parse" in response.error
    mocks["save_handler"].assert_not_called()
    # The exchange itself is still part of the conversation.
    assert len(mocks["session"].conversation.snapshot()) == 2


def test_unknown_window_is_rejected(setup_mocks):
    mocks = setup_mocks
    mocks["llm"].send.return_value = _reply(format_action_call("browser", "open"))

    response = _turn(mocks)

    assert not response.success
    assert "not open" in response.error
    assert any(isinstance(e, ActionRejected) for e in mocks["events"])
    assert not any(isinstance(e, ActionInvoked) for e in mocks["events"])
    assert mocks["session"].conversation.snapshot()[-1].kind == "action_result"


def test_invalid_params_are_rejected(setup_mocks):
    mocks = setup_mocks
    mocks["llm"].send.return_value = _reply(format_action_call("editor", "save", {"name": 42}))

    response = _turn(mocks)

    assert not response.success
    assert "'name' must be string" in response.error
    assert response.action_result.success is False
    mocks["save_handler"].assert_not_called()


def test_handler_failure_is_recorded_but_turn_succeeds(setup_mocks):
    mocks = setup_mocks
    mocks["save_handler"].side_effect = OSError("disk full")
    mocks["llm"].send.return_value = _reply(format_action_call("editor", "save", {"name": "a"}))

    response = _turn(mocks)

    assert response.success
    assert response.action_result.success is False
    completed = [e for e in mocks["events"] if isinstance(e, ActionCompleted)]
    assert completed[0].success is False


def test_auto_close_on_action_closes_window(setup_mocks):
    mocks = setup_mocks
    session = mocks["session"]
    window = session.windows.get("editor")
    session.windows.open(window.model_copy(update={"options": WindowOptions(auto_close_on_action=True)}))

    process_assistant_output(session, format_action_call("editor", "save", {"name": "a"}), mocks["registry"])

    assert session.windows.get("editor") is None
    assert isinstance(mocks["events"][-1], WindowClosed)


def test_reserved_close_action(setup_mocks):
    mocks = setup_mocks
    session = mocks["session"]

    response = process_assistant_output(session, format_action_call("editor", "close", {"summary": "done"}), mocks["registry"])

    assert response.success
    assert response.action_result.should_close
    assert session.windows.get("editor") is None
    closed = [e for e in mocks["events"] if isinstance(e, WindowClosed)]
    assert closed[0].summary == "done"


def test_reserved_close_refused_on_pinned_window(setup_mocks):
    mocks = setup_mocks
    session = mocks["session"]
    session.windows.open(Window(id="status", options=WindowOptions(closable=False)))

    response = process_assistant_output(session, format_action_call("status", "close"), mocks["registry"])

    assert not response.success
    assert "cannot be closed" in response.error
    assert session.windows.get("status") is not None


def test_call_model_rejects_non_response_values(executor):
    llm = MagicMock(spec=LLMClient)
    llm.send.return_value = "just a string"

    response = call_model(llm, [], executor, timeout=1)

    assert not response.success
    assert "not LLMResponse" in response.error


def _explorer_apps(sandbox, registry):
    explorer = FileExplorerApp(str(sandbox))
    explorer.install(registry)
    return {explorer.name: explorer}


def test_create_call_opens_the_application_window(setup_mocks, sandbox):
    # 1. ARRANGE
    mocks = setup_mocks
    apps = _explorer_apps(sandbox, mocks["registry"])
    mocks["llm"].send.return_value = _reply(format_create_call("file_explorer", target="docs"))

    # 2. ACT
    response = _turn(mocks, "show me the docs", apps=apps)

    # 3. ASSERT
    assert response.success
    assert isinstance(response.action, CreateCall)
    assert response.action_result.data == {"window_id": "file_explorer"}

    window = mocks["session"].windows.get("file_explorer")
    assert "Current directory: /docs" in window.content.render()
    opened = [e for e in mocks["events"] if isinstance(e, WindowOpened)]
    assert opened[-1].window_id == "file_explorer"

    last = mocks["session"].conversation.snapshot()[-1]
    assert last.kind == "action_result"
    assert '"action_id": "create"' in last.content
    assert '"success": true' in last.content


def test_create_call_for_unknown_application_is_rejected(setup_mocks, sandbox):
    mocks = setup_mocks
    apps = _explorer_apps(sandbox, mocks["registry"])
    mocks["llm"].send.return_value = _reply(format_create_call("calculator"))

    response = _turn(mocks, "add numbers", apps=apps)

    assert not response.success
    assert "Unknown application 'calculator'" in response.error
    rejected = [e for e in mocks["events"] if isinstance(e, ActionRejected)]
    assert (rejected[-1].window_id, rejected[-1].action_id) == ("calculator", "create")
    assert not any(isinstance(e, WindowOpened) and e.window_id == "calculator" for e in mocks["events"])
    assert mocks["session"].conversation.snapshot()[-1].kind == "action_result"


def test_create_call_with_bad_target_is_rejected(setup_mocks, sandbox):
    mocks = setup_mocks
    apps = _explorer_apps(sandbox, mocks["registry"])

    response = process_assistant_output(
        mocks["session"], format_create_call("file_explorer", target="../outside"), mocks["registry"], apps=apps,
    )

    assert not response.success
    assert "path traversal" in response.error
    assert "file_explorer" not in mocks["session"].windows


def test_launcher_action_opens_the_requested_application(setup_mocks, sandbox):
    # 1. ARRANGE
    mocks = setup_mocks
    apps = _explorer_apps(sandbox, mocks["registry"])
    launcher = AppLauncher(lambda: list(apps.values()))
    launcher.install(mocks["registry"])
    mocks["session"].windows.open(launcher.create_window(mocks["session"].id))

    # 2. ACT
    response = process_assistant_output(
        mocks["session"], format_action_call("launcher", "open", {"app": "file_explorer"}), mocks["registry"], apps=apps,
    )

    # 3. ASSERT
    assert response.success
    assert response.action_result.message == "Opened window 'file_explorer'."
    assert "file_explorer" in mocks["session"].windows
    assert "launcher" in mocks["session"].windows
    completed = [e for e in mocks["events"] if isinstance(e, ActionCompleted)]
    assert (completed[-1].window_id, completed[-1].success) == ("launcher", True)


def test_rejected_call_never_enters_dispatching_state(setup_mocks):
    # 1. ARRANGE: record the turn state each time a rejection or invocation is published.
    mocks = setup_mocks
    states = []
    mocks["session"].bus.subscribe(ActionRejected, lambda e: states.append(("rejected", mocks["session"].state)))
    mocks["session"].bus.subscribe(ActionInvoked, lambda e: states.append(("invoked", mocks["session"].state)))
    mocks["llm"].send.side_effect = [
        _reply(format_action_call("editor", "save", {})),
        _reply(format_action_call("editor", "save", {"name": "a"})),
    ]

    # 2. ACT
    _turn(mocks)
    _turn(mocks)

    # 3. ASSERT
    assert states == [
        ("rejected", TurnState.AWAITING_MODEL),
        ("invoked", TurnState.DISPATCHING_ACTION),
    ]
    assert mocks["session"].state == TurnState.IDLE
