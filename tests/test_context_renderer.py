import pytest

from components import Text, VStack
from context_renderer import ContextRenderer
from data_models import ActionDefinition, ActionParamSchema, ConversationItem, RenderOptions, Role, Window, WindowOptions

# 250 characters estimate to exactly 100 tokens.
HUNDRED_TOKENS = "x" * 250


def _conversation(count, content=HUNDRED_TOKENS):
    roles = [Role.USER, Role.ASSISTANT]
    return tuple(
        ConversationItem(role=roles[i % 2], content=f"{i:03d}{content[3:]}", seq=i + 1) for i in range(count)
    )


@pytest.fixture
def renderer():
    return ContextRenderer()


@pytest.fixture
def explorer_window():
    return Window(
        id="file_explorer",
        app_name="file_explorer",
        description="Browse files.",
        content=VStack([Text("Current directory: /"), Text("notes.txt")]),
        actions=[
            ActionDefinition(
                id="open",
                label="Open",
                params=ActionParamSchema.object_({"path": ActionParamSchema.string()}),
            )
        ],
    )


def test_under_budget_renders_everything(renderer, explorer_window):
    conversation = _conversation(4)

    doc = renderer.render([explorer_window], conversation, RenderOptions(max_tokens=8000))

    assert doc.dropped_items == 0
    assert doc.items == conversation
    assert doc.conversation_tokens == 400


def test_large_conversation_is_trimmed_to_target(renderer, explorer_window):
    # 1. ARRANGE: a 10000-token conversation against an 8000/2000/4000 budget.
    conversation = _conversation(100)
    options = RenderOptions(max_tokens=8000, min_conversation_tokens=2000, trim_to_tokens=4000)

    # 2. ACT
    doc = renderer.render([explorer_window], conversation, options)

    # 3. ASSERT
    assert doc.estimated_tokens <= 4000
    assert doc.conversation_tokens >= 2000
    assert doc.dropped_items > 0
    # Survivors are the newest items, in order.
    assert doc.items == conversation[doc.dropped_items:]
    assert "notes.txt" in doc.to_xml()
    assert doc.windows[0].id == "file_explorer"


def test_trimming_stops_at_the_protected_floor(renderer):
    # Windows alone exceed the target, so only the floor can stop trimming.
    big_window = Window(id="log", content="y" * 5000)
    conversation = _conversation(10)
    options = RenderOptions(max_tokens=2000, min_conversation_tokens=500, trim_to_tokens=1500)

    doc = renderer.render([big_window], conversation, options)

    assert doc.conversation_tokens == 500
    assert doc.items == conversation[5:]
    # The window is kept whole even though the budget is exceeded.
    assert doc.estimated_tokens > options.max_tokens
    assert "y" * 5000 in doc.to_xml()


def test_system_items_survive_trimming(renderer):
    system_item = ConversationItem(role=Role.SYSTEM, content=HUNDRED_TOKENS, seq=0)
    conversation = (system_item,) + _conversation(30)
    options = RenderOptions(max_tokens=1000, min_conversation_tokens=0, trim_to_tokens=500)

    doc = renderer.render([], conversation, options)

    assert doc.items[0] is system_item
    assert doc.dropped_items > 0


def test_rendering_is_deterministic(renderer, explorer_window):
    conversation = _conversation(50)
    options = RenderOptions(max_tokens=3000, min_conversation_tokens=500, trim_to_tokens=2000)

    first = renderer.render([explorer_window], conversation, options, system_prompt="prompt")
    second = renderer.render([explorer_window], conversation, options, system_prompt="prompt")

    assert first.to_xml() == second.to_xml()
    assert first.to_text() == second.to_text()
    assert first.to_messages() == second.to_messages()


def test_xml_structure(renderer, explorer_window):
    conversation = (
        ConversationItem(role=Role.USER, content="open notes"),
        ConversationItem(role=Role.USER, content="Tool Result: {}", kind="action_result"),
    )

    xml = renderer.render([explorer_window], conversation).to_xml()

    assert xml.startswith('<context><window id="file_explorer" app="file_explorer">')
    assert '<action id="open" label="Open" params="{path:string}" />' in xml
    assert '<action id="close" params="{summary:string?}" />' in xml
    assert '<message role="user">open notes</message>' in xml
    assert '<message role="user" kind="action_result">Tool Result: {}</message>' in xml
    assert xml.endswith("</conversation></context>")


def test_compact_window_renders_content_only(renderer):
    window = Window(
        id="clock",
        description="A clock.",
        content="12:00",
        actions=[ActionDefinition(id="tick")],
        options=WindowOptions(render_mode="compact"),
    )

    doc = renderer.render([window], ())

    assert doc.to_xml() == '<context><window id="clock"><content>12:00</content></window><conversation /></context>'
    assert "tick" not in doc.to_text()


def test_to_messages_puts_windows_in_system_message(renderer, explorer_window):
    conversation = (
        ConversationItem(role=Role.USER, content="hi"),
        ConversationItem(role=Role.ASSISTANT, content="hello"),
    )

    messages = renderer.render([explorer_window], conversation, system_prompt="Be brief.").to_messages()

    assert [m.role for m in messages] == ["system", "user", "assistant"]
    assert messages[0].content.startswith("Be brief.\n\n<windows>\n<window id=\"file_explorer\"")
    assert messages[2].content == "hello"


def test_to_text_is_an_indented_outline(renderer, explorer_window):
    conversation = (ConversationItem(role=Role.USER, content="hi"),)

    text = renderer.render([explorer_window], conversation).to_text()

    assert text.splitlines() == [
        "context",
        "  window file_explorer (file_explorer)",
        "    description:",
        "      Browse files.",
        "    content:",
        "      Current directory: /",
        "      notes.txt",
        "    actions:",
        "      - open({path:string}): Open",
        "      - close({summary:string?})",
        "  conversation",
        "    user: hi",
    ]
