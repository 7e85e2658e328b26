import pydantic
import pytest

from data_models import (
    ActionDefinition,
    ActionParamSchema,
    ActionResult,
    ConversationItem,
    RenderOptions,
    Role,
    TokenUsage,
    Window,
)


def test_prompt_signature_marks_optional_fields_and_nests():
    schema = ActionParamSchema.object_({
        "path": ActionParamSchema.string(),
        "options": ActionParamSchema.object_({"recursive": ActionParamSchema.boolean()}, required=False),
        "tags": ActionParamSchema.array(ActionParamSchema.string(), required=False),
    })

    assert schema.to_prompt_signature() == "{path:string, options:{recursive:boolean}?, tags:array<string>?}"


def test_prompt_signature_for_bare_containers():
    assert ActionParamSchema.object_().to_prompt_signature() == "object"
    assert ActionParamSchema.array().to_prompt_signature() == "array<any>"


def test_has_default_distinguishes_explicit_none():
    assert ActionParamSchema.string(required=False, default=None).has_default
    assert not ActionParamSchema.string(required=False).has_default


@pytest.mark.parametrize(
    "trim_to, max_tokens, expected",
    [
        (4000, 8000, 4000),
        (0, 8000, 4000),
        (-5, 9, 4),
        (20000, 8000, 8000),
        (0, 1, 1),
    ],
)
def test_target_tokens_clamps_trim_target(trim_to, max_tokens, expected):
    options = RenderOptions(max_tokens=max_tokens, min_conversation_tokens=0, trim_to_tokens=trim_to)

    assert options.target_tokens == expected


def test_protected_floor_never_exceeds_target():
    options = RenderOptions(max_tokens=1000, min_conversation_tokens=900, trim_to_tokens=300)

    assert options.protected_conversation_tokens == 300


def test_render_options_reject_non_positive_budget():
    with pytest.raises(pydantic.ValidationError):
        RenderOptions(max_tokens=0)


def test_conversation_items_are_frozen():
    item = ConversationItem(role=Role.USER, content="hi")

    with pytest.raises(pydantic.ValidationError):
        item.content = "changed"


def test_only_user_and_assistant_items_are_evictable():
    assert ConversationItem(role=Role.USER, content="a").is_evictable
    assert ConversationItem(role=Role.ASSISTANT, content="a").is_evictable
    assert not ConversationItem(role=Role.SYSTEM, content="a").is_evictable


def test_action_result_constructors():
    ok = ActionResult.ok(summary="done")
    failed = ActionResult.fail("nope")
    closed = ActionResult.close("bye")

    assert ok.success and ok.should_refresh and not ok.should_close
    assert not failed.success and failed.message == "nope"
    assert closed.success and closed.should_close and closed.summary == "bye"


def test_window_find_action_and_handler_kind():
    window = Window(id="w", actions=[ActionDefinition(id="open"), ActionDefinition(id="save", kind="editor.save")])

    assert window.find_action("open").handler_kind == "open"
    assert window.find_action("save").handler_kind == "editor.save"
    assert window.find_action("missing") is None


def test_token_usage_adds_up():
    total = TokenUsage(prompt_tokens=1, completion_tokens=2, total_tokens=3) + TokenUsage(
        prompt_tokens=10, completion_tokens=20, total_tokens=30
    )

    assert total == TokenUsage(prompt_tokens=11, completion_tokens=22, total_tokens=33)
