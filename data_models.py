"""
Defines the core data structures for the engine using Pydantic.

This module provides centralized, validated models that keep data consistent
across the conversation store, the window registry, the context renderer,
the action agent and the orchestrator. Events published on a session's bus
and the response handed back to callers live here too, so the engine's data
flow is explicit and self-documenting.
"""
import time
import uuid
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

import config
from components import Content


# --- Conversation ---

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    # Bookkeeping entries; never evicted or trimmed.
    SYSTEM = "system"


EVICTABLE_ROLES = frozenset({Role.USER, Role.ASSISTANT})


class ConversationItem(BaseModel):
    """
    A single entry of a session's conversation log.

    Items are immutable once stored; the store stamps `seq` on append and the
    stamped copy is what observers and the renderer see.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    content: str
    # 'action_result' items carry the outcome of a dispatched action back to the model.
    kind: Literal["message", "action_result"] = "message"
    # Issued by the session's SequenceClock when the item is appended.
    seq: int = 0
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_evictable(self) -> bool:
        return self.role in EVICTABLE_ROLES


# --- Action schemas ---

class ParamKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class ActionParamSchema(BaseModel):
    """
    A recursive, JSON-like description of the parameters an action accepts.

    Object nodes carry their properties, array nodes carry the schema of their
    elements. Every node says whether it is required and may carry a default
    that is substituted when an optional value is absent.
    """
    model_config = ConfigDict(frozen=True)

    kind: ParamKind
    required: bool = True
    description: Optional[str] = None
    default: Any = None
    properties: Optional[dict[str, "ActionParamSchema"]] = None
    items: Optional["ActionParamSchema"] = None

    @property
    def has_default(self) -> bool:
        # An explicit `default=None` still counts as a declared default.
        return "default" in self.model_fields_set

    @classmethod
    def string(cls, **kwargs) -> "ActionParamSchema":
        return cls(kind=ParamKind.STRING, **kwargs)

    @classmethod
    def integer(cls, **kwargs) -> "ActionParamSchema":
        return cls(kind=ParamKind.INTEGER, **kwargs)

    @classmethod
    def number(cls, **kwargs) -> "ActionParamSchema":
        return cls(kind=ParamKind.NUMBER, **kwargs)

    @classmethod
    def boolean(cls, **kwargs) -> "ActionParamSchema":
        return cls(kind=ParamKind.BOOLEAN, **kwargs)

    @classmethod
    def object_(cls, properties: dict[str, "ActionParamSchema"] | None = None, **kwargs) -> "ActionParamSchema":
        return cls(kind=ParamKind.OBJECT, properties=properties or {}, **kwargs)

    @classmethod
    def array(cls, items: "ActionParamSchema | None" = None, **kwargs) -> "ActionParamSchema":
        return cls(kind=ParamKind.ARRAY, items=items, **kwargs)

    def to_prompt_signature(self) -> str:
        """Renders a compact signature such as `{path:string, recursive:boolean?}`."""
        if self.kind == ParamKind.ARRAY:
            inner = self.items.to_prompt_signature() if self.items else "any"
            return f"array<{inner}>"
        if self.kind == ParamKind.OBJECT:
            if not self.properties:
                return "object"
            fields = ", ".join(
                f"{name}:{schema.to_prompt_signature()}{'' if schema.required else '?'}"
                for name, schema in self.properties.items()
            )
            return "{" + fields + "}"
        return self.kind.value


class ActionDefinition(BaseModel):
    """An operation a window advertises to the model."""
    model_config = ConfigDict(frozen=True)

    # Unique within its window.
    id: str
    label: str = ""
    description: Optional[str] = None
    # Key into the ActionHandlerRegistry; defaults to the action id.
    kind: Optional[str] = None
    params: Optional[ActionParamSchema] = None

    @property
    def handler_kind(self) -> str:
        return self.kind or self.id


# --- Windows ---

class WindowOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    closable: bool = True
    # Close the window after any action on it completes.
    auto_close_on_action: bool = False
    # 'compact' windows render their content only, without description or actions.
    render_mode: Literal["full", "compact"] = "full"


class Window(BaseModel):
    """
    An application surface exposed to the model: what it is, what it shows,
    and which actions it accepts.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Unique within a session; opening a window with an existing id replaces it.
    id: str
    # The application that owns the window, e.g. 'file_explorer'.
    app_name: Optional[str] = None
    # Tells the model what the window is and how to operate it.
    description: Optional[Content] = None
    # The window's main body: plain text or a component tree.
    content: Content = ""
    actions: list[ActionDefinition] = Field(default_factory=list)
    options: WindowOptions = Field(default_factory=WindowOptions)
    # Re-renders `content` when the window is refreshed; None keeps content as is.
    content_provider: Optional[Callable[[], Content]] = Field(default=None, exclude=True, repr=False)
    # Sequence numbers stamped by the WindowRegistry.
    created_at: int = 0
    updated_at: int = 0

    def find_action(self, action_id: str) -> Optional[ActionDefinition]:
        return next((action for action in self.actions if action.id == action_id), None)


# --- Action execution ---

class ActionContext(BaseModel):
    """Everything a handler needs to execute one validated action call."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    window_id: str
    action_id: str
    # Validated and normalized parameters, defaults already applied.
    params: dict[str, Any] = Field(default_factory=dict)
    window: Optional[Window] = None

    def get(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)


class ActionResult(BaseModel):
    """
    The standardized outcome of an action. A failed action is an ordinary,
    recordable result rather than an error.
    """
    model_config = ConfigDict(frozen=True)

    success: bool
    # A human-readable message describing the outcome.
    message: Optional[str] = None
    # A short, durable description recorded in the activity log.
    summary: Optional[str] = None
    # Optional machine-usable payload returned by the handler.
    data: Any = None
    should_refresh: bool = False
    should_close: bool = False

    @classmethod
    def ok(
        cls,
        message: str | None = None,
        summary: str | None = None,
        data: Any = None,
        should_refresh: bool = True,
        should_close: bool = False,
    ) -> "ActionResult":
        return cls(
            success=True, message=message, summary=summary, data=data,
            should_refresh=should_refresh, should_close=should_close,
        )

    @classmethod
    def fail(cls, message: str) -> "ActionResult":
        return cls(success=False, message=message)

    @classmethod
    def close(cls, summary: str | None = None) -> "ActionResult":
        return cls(success=True, summary=summary, should_close=True)


# --- Parsed model output ---

class PlainReply(BaseModel):
    """A model response that carries no action call."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["plain"] = "plain"
    text: str


class ActionCall(BaseModel):
    """A model response that asks for one action on one window."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["action"] = "action"
    window_id: str
    action_id: str
    params: dict[str, Any] = Field(default_factory=dict)
    # Prose surrounding the call, if the model wrote any.
    text: Optional[str] = None


class CreateCall(BaseModel):
    """A model response that asks to launch an installed application."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["create"] = "create"
    app_name: str
    # Where the new window should start, e.g. a directory for the file explorer.
    target: Optional[str] = None
    text: Optional[str] = None


ParsedResponse = Annotated[Union[PlainReply, ActionCall, CreateCall], Field(discriminator="kind")]


# --- LLM collaborator ---

class LLMMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage | None") -> "TokenUsage":
        if other is None:
            return self.model_copy()
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class LLMResponse(BaseModel):
    success: bool
    content: str = ""
    model: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    error: Optional[str] = None

    @classmethod
    def fail(cls, error: str, model: str | None = None) -> "LLMResponse":
        return cls(success=False, error=error, model=model)


# --- Rendering ---

class RenderOptions(BaseModel):
    """The token budget applied to a single render call."""
    model_config = ConfigDict(frozen=True)

    max_tokens: int = Field(default=config.MAX_TOKENS, gt=0)
    # Trimming never takes the conversation below this many tokens.
    min_conversation_tokens: int = Field(default=config.MIN_CONVERSATION_TOKENS, ge=0)
    # Target after trimming; <= 0 means half of max_tokens.
    trim_to_tokens: int = config.TRIM_TO_TOKENS

    @property
    def target_tokens(self) -> int:
        if self.trim_to_tokens <= 0:
            return max(1, self.max_tokens // 2)
        return min(max(self.trim_to_tokens, 1), self.max_tokens)

    @property
    def protected_conversation_tokens(self) -> int:
        return min(max(self.min_conversation_tokens, 0), self.target_tokens)


# --- Turn outcome ---

class InteractionResponse(BaseModel):
    """
    The result of one turn, returned to the caller. Every failure path is
    expressed here with success=False and a human-readable error.
    """
    success: bool
    error: Optional[str] = None
    # The model's raw reply text.
    content: Optional[str] = None
    model: Optional[str] = None
    action: Optional[Union[ActionCall, CreateCall]] = None
    action_result: Optional[ActionResult] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @classmethod
    def fail(cls, error: str, **kwargs) -> "InteractionResponse":
        return cls(success=False, error=error, **kwargs)


class ActivityEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int
    text: str
    timestamp: float = Field(default_factory=time.time)


# --- Session events ---

class SessionEvent(BaseModel):
    """
    Base class of everything published on a session's EventBus. `seq` comes
    from the session's SequenceClock and totally orders a session's events.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: str
    seq: int
    session_id: str


class MessageAppended(SessionEvent):
    kind: Literal["message_appended"] = "message_appended"
    item: ConversationItem


class ActionInvoked(SessionEvent):
    kind: Literal["action_invoked"] = "action_invoked"
    window_id: str
    action_id: str
    params: dict[str, Any] = Field(default_factory=dict)


class ActionCompleted(SessionEvent):
    kind: Literal["action_completed"] = "action_completed"
    window_id: str
    action_id: str
    success: bool
    message: Optional[str] = None
    summary: Optional[str] = None


class ActionRejected(SessionEvent):
    """An action call that failed lookup or validation and was never dispatched."""
    kind: Literal["action_rejected"] = "action_rejected"
    window_id: str
    action_id: str
    error: str


class WindowOpened(SessionEvent):
    kind: Literal["window_opened"] = "window_opened"
    window_id: str
    app_name: Optional[str] = None
    # True when the window replaced an earlier one with the same id.
    replaced: bool = False


class WindowUpdated(SessionEvent):
    kind: Literal["window_updated"] = "window_updated"
    window_id: str


class WindowClosed(SessionEvent):
    kind: Literal["window_closed"] = "window_closed"
    window_id: str
    summary: Optional[str] = None


class InteractionFailed(SessionEvent):
    kind: Literal["interaction_failed"] = "interaction_failed"
    error: str


# Resolve the self-references of the recursive schema model.
ActionParamSchema.model_rebuild()
