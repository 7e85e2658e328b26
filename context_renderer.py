"""
Renders a session's state into the context handed to the language model.

The rendered document is a tree: a `<context>` root holding one `<window>`
subtree per open window followed by a `<conversation>` subtree with one
entry per conversation item. The same tree can be emitted as nested markup,
as an indented plain-text outline, or as the ordered list of role-tagged
messages the LLM client expects.

When the estimated size exceeds the budget, the oldest user/assistant items
are dropped from the rendered copy until the estimate reaches the trim
target, without taking the conversation below its protected floor. Windows
are never dropped, so a document with large windows may stay over budget.
The store itself is never modified.
"""
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from components import Component, as_component, render_xml
from data_models import ActionDefinition, ConversationItem, LLMMessage, RenderOptions, Role, Window
from tracer import trace
from utils import estimate_tokens

_LLM_ROLES = {Role.USER: "user", Role.ASSISTANT: "assistant", Role.SYSTEM: "system"}


def _content_element(tag: str, content) -> ET.Element:
    element = ET.Element(tag)
    if isinstance(content, Component):
        element.append(content.to_xml())
    else:
        element.text = "" if content is None else str(content)
    return element


def _action_to_xml(action: ActionDefinition) -> ET.Element:
    attrs = {"id": action.id}
    if action.label:
        attrs["label"] = action.label
    if action.params is not None:
        attrs["params"] = action.params.to_prompt_signature()
    element = ET.Element("action", attrs)
    if action.description:
        element.text = action.description
    return element


def window_to_xml(window: Window) -> ET.Element:
    attrs = {"id": window.id}
    if window.app_name:
        attrs["app"] = window.app_name
    element = ET.Element("window", attrs)
    if window.options.render_mode == "compact":
        element.append(_content_element("content", window.content))
        return element

    if window.description is not None:
        element.append(_content_element("description", window.description))
    element.append(_content_element("content", window.content))
    actions = ET.SubElement(element, "actions")
    actions.extend(_action_to_xml(action) for action in window.actions)
    if window.options.closable:
        ET.SubElement(actions, "action", {"id": "close", "params": "{summary:string?}"})
    return element


def item_to_xml(item: ConversationItem) -> ET.Element:
    attrs = {"role": item.role.value}
    if item.kind != "message":
        attrs["kind"] = item.kind
    element = ET.Element("message", attrs)
    element.text = item.content
    return element


def _indent(text: str, prefix: str) -> list[str]:
    return [f"{prefix}{line}" for line in text.splitlines()] or [prefix.rstrip()]


def window_to_text(window: Window, prefix: str = "") -> list[str]:
    inner = prefix + "  "
    title = f"window {window.id}" + (f" ({window.app_name})" if window.app_name else "")
    lines = [f"{prefix}{title}"]
    body = as_component(window.content).render()
    if window.options.render_mode == "compact":
        return lines + _indent(body, inner)

    if window.description is not None:
        lines.append(f"{inner}description:")
        lines.extend(_indent(as_component(window.description).render(), inner + "  "))
    lines.append(f"{inner}content:")
    lines.extend(_indent(body, inner + "  "))
    lines.append(f"{inner}actions:")
    for action in window.actions:
        signature = action.params.to_prompt_signature() if action.params else ""
        label = f": {action.label}" if action.label else ""
        lines.append(f"{inner}  - {action.id}({signature}){label}")
    if window.options.closable:
        lines.append(f"{inner}  - close({{summary:string?}})")
    return lines


@dataclass(frozen=True)
class RenderedDocument:
    """The result of one render call. Equal inputs produce equal documents."""
    windows: tuple[Window, ...]
    items: tuple[ConversationItem, ...]
    system_prompt: Optional[str] = None
    window_tokens: int = 0
    conversation_tokens: int = 0
    # Number of conversation items left out to meet the budget.
    dropped_items: int = 0
    _window_markup: tuple[str, ...] = field(default=(), repr=False)

    @property
    def estimated_tokens(self) -> int:
        return self.window_tokens + self.conversation_tokens

    def to_element(self) -> ET.Element:
        root = ET.Element("context")
        root.extend(window_to_xml(window) for window in self.windows)
        conversation = ET.SubElement(root, "conversation")
        conversation.extend(item_to_xml(item) for item in self.items)
        return root

    def to_xml(self) -> str:
        return render_xml(self.to_element())

    def to_text(self) -> str:
        lines = ["context"]
        for window in self.windows:
            lines.extend(window_to_text(window, "  "))
        lines.append("  conversation")
        for item in self.items:
            tag = item.role.value if item.kind == "message" else f"{item.role.value}/{item.kind}"
            content = item.content.splitlines() or [""]
            lines.append(f"    {tag}: {content[0]}")
            lines.extend(f"      {line}" for line in content[1:])
        return "\n".join(lines)

    def to_messages(self) -> list[LLMMessage]:
        """
        Converts the document to role-tagged LLM messages: one system message
        carrying the system prompt and the window markup, then one message
        per conversation item in order.
        """
        header_parts = []
        if self.system_prompt:
            header_parts.append(self.system_prompt)
        if self._window_markup:
            header_parts.append("<windows>\n" + "\n".join(self._window_markup) + "\n</windows>")
        messages = []
        if header_parts:
            messages.append(LLMMessage(role="system", content="\n\n".join(header_parts)))
        messages.extend(LLMMessage(role=_LLM_ROLES[item.role], content=item.content) for item in self.items)
        return messages


class ContextRenderer:
    @trace
    def render(
        self,
        windows: Iterable[Window],
        conversation: Sequence[ConversationItem],
        options: Optional[RenderOptions] = None,
        system_prompt: Optional[str] = None,
    ) -> RenderedDocument:
        """
        Renders windows and conversation within the token budget of `options`.

        Args:
            windows: The open windows, in opening order.
            conversation: A snapshot of the conversation, oldest first.
            options: The token budget; configuration defaults when omitted.
            system_prompt: Text placed ahead of the window markup in
                `to_messages()`.

        Returns:
            The RenderedDocument, possibly with older items trimmed.
        """
        options = options or RenderOptions()
        windows = tuple(windows)
        markup = tuple(render_xml(window_to_xml(window)) for window in windows)
        window_tokens = sum(estimate_tokens(text) for text in markup)

        items = list(conversation)
        item_tokens = [estimate_tokens(item.content) for item in items]
        conversation_tokens = sum(item_tokens)

        keep = trim_conversation(items, item_tokens, window_tokens, options)
        dropped = len(items) - len(keep)
        if dropped:
            kept_tokens = sum(item_tokens[i] for i in keep)
            logging.info(
                f"Trimmed {dropped} conversation item(s): {window_tokens + conversation_tokens} -> "
                f"{window_tokens + kept_tokens} estimated tokens (target {options.target_tokens})."
            )
            conversation_tokens = kept_tokens

        return RenderedDocument(
            windows=windows,
            items=tuple(items[i] for i in keep),
            system_prompt=system_prompt,
            window_tokens=window_tokens,
            conversation_tokens=conversation_tokens,
            dropped_items=dropped,
            _window_markup=markup,
        )


def trim_conversation(
    items: Sequence[ConversationItem],
    item_tokens: Sequence[int],
    window_tokens: int,
    options: RenderOptions,
) -> list[int]:
    """
    Chooses which conversation items survive the budget.

    Returns:
        The indices of the kept items, in their original order.
    """
    total = window_tokens + sum(item_tokens)
    keep = list(range(len(items)))
    if total <= options.max_tokens:
        return keep

    target = options.target_tokens
    floor = options.protected_conversation_tokens
    conversation = sum(tokens for tokens, item in zip(item_tokens, items) if item.is_evictable)

    for index, item in enumerate(items):
        if total <= target:
            break
        if not item.is_evictable:
            continue
        cost = item_tokens[index]
        if conversation - cost < floor:
            break
        keep.remove(index)
        total -= cost
        conversation -= cost
    return keep
