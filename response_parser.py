"""
Turns raw model output into a structured response.

The model proposes an action by writing a single block of the form

    <tool_call>{"name": "action", "arguments": {"window_id": "...",
    "action_id": "...", "params": {...}}}</tool_call>

or launches an installed application with

    <tool_call>{"name": "create", "arguments": {"name": "...", "target": "..."}}</tool_call>

Output without a `<tool_call>` tag is a plain reply. Output with a tag whose
body cannot be read as a well-formed call is rejected with a
ResponseParseError rather than guessed at, so a malformed call is never
dispatched.
"""
import json
import logging
import re
from typing import Union

from data_models import ActionCall, CreateCall, PlainReply
from tracer import trace

_TOOL_CALL_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)
_OPEN_TAG = "<tool_call>"


class ResponseParseError(ValueError):
    """Raised when model output contains action markup that cannot be parsed."""


def _clean_prose(prose: str) -> str | None:
    """Collapses the text around a tool call; returns None when nothing meaningful is left."""
    cleaned = re.sub(r"\n{3,}", "\n\n", prose).strip()
    return cleaned or None


def _require_str(arguments: dict, key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ResponseParseError(f"Action call is missing '{key}'.")
    return value.strip()


@trace
def parse_response(text: str) -> Union[PlainReply, ActionCall, CreateCall]:
    """
    Parses model output into a PlainReply, an ActionCall or a CreateCall.

    Args:
        text: The raw text returned by the model.

    Returns:
        An ActionCall or CreateCall when the text contains a tool call block,
        otherwise a PlainReply holding the text unchanged.

    Raises:
        ResponseParseError: The text contains a tool call block that is not
            valid JSON or does not describe an action or a launch.
    """
    text = text or ""
    matches = list(_TOOL_CALL_RE.finditer(text))
    if not matches:
        if _OPEN_TAG in text:
            raise ResponseParseError("Unterminated <tool_call> block.")
        return PlainReply(text=text)

    if len(matches) > 1:
        logging.warning(f"Model proposed {len(matches)} action calls; only the first is used.")
    match = matches[0]

    body = match.group(1).strip()
    try:
        payload = json.loads(body, strict=False)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Action call is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ResponseParseError("Action call must be a JSON object.")
    name = payload.get("name")
    if name not in ("action", "create"):
        raise ResponseParseError(f"Unsupported tool call '{name}'.")
    arguments = payload.get("arguments")
    if not isinstance(arguments, dict):
        raise ResponseParseError("Action call has no 'arguments' object.")

    prose = text[:match.start()] + text[match.end():]
    if name == "create":
        target = arguments.get("target")
        if target is not None and not isinstance(target, str):
            raise ResponseParseError("Create call 'target' must be a string.")
        return CreateCall(app_name=_require_str(arguments, "name"), target=target or None, text=_clean_prose(prose))

    params = arguments.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ResponseParseError("Action call 'params' must be a JSON object.")

    return ActionCall(
        window_id=_require_str(arguments, "window_id"),
        action_id=_require_str(arguments, "action_id"),
        params=params,
        text=_clean_prose(prose),
    )


def format_action_call(window_id: str, action_id: str, params: dict | None = None) -> str:
    """Builds the tool call markup for an action; the inverse of `parse_response`."""
    payload = {"name": "action", "arguments": {"window_id": window_id, "action_id": action_id, "params": params or {}}}
    return f"<tool_call>{json.dumps(payload, ensure_ascii=False)}</tool_call>"


def format_create_call(app_name: str, target: str | None = None) -> str:
    """Builds the tool call markup that launches an application."""
    arguments = {"name": app_name}
    if target is not None:
        arguments["target"] = target
    return f"<tool_call>{json.dumps({'name': 'create', 'arguments': arguments}, ensure_ascii=False)}</tool_call>"
