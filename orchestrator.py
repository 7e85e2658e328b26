"""
Core turn cycle of the engine.

This module drives a single interaction between the user, the model and the
session's windows:
1. Stage the user's message and render the session context around it.
2. Call the model on a worker thread, bounded by a deadline and a
   cancellation event.
3. Commit the user message and the model's reply to the conversation.
4. Parse the reply; if it proposes an action, resolve and validate it.
5. Dispatch the action to its handler, or open the requested application
   window, and record the outcome.

A failed, timed-out or cancelled model call leaves the conversation exactly
as it was. Every failure is reported as an unsuccessful InteractionResponse;
nothing in this module raises to its caller for a turn-scoped problem.

Callers must hold the session lock for the duration of a turn.
"""
import json
import logging
import threading
import time
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from typing import Mapping, Optional

import config
from action_agent import ActionHandlerRegistry, execute_action, resolve_action
from context_renderer import ContextRenderer
from data_models import (
    ActionCall,
    ActionCompleted,
    ActionContext,
    ActionInvoked,
    ActionRejected,
    ActionResult,
    ConversationItem,
    CreateCall,
    InteractionFailed,
    InteractionResponse,
    LLMMessage,
    LLMResponse,
    PlainReply,
    RenderOptions,
    Role,
    TokenUsage,
    Window,
)
from llm_client import LLMClient
from response_parser import ResponseParseError, parse_response
from schema_validator import ValidationError, validate_params
from session_models import ActiveSession, TurnState
from tracer import log_event, trace
from window_registry import NotFound

# Action id under which application launches are recorded.
CREATE_ACTION_ID = "create"
# How often a pending model call checks for cancellation.
POLL_INTERVAL_SECONDS = 0.05

_renderer = ContextRenderer()


@trace
def call_model(
    llm_client: LLMClient,
    messages: list[LLMMessage],
    executor: Executor,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> LLMResponse:
    """
    Sends `messages` to the model on `executor` and waits for the reply.

    The wait is abandoned when `timeout` seconds pass or `cancel_event` is
    set, in which case a failed LLMResponse is returned. An abandoned call may
    still finish on its worker thread; its result is discarded.

    Args:
        llm_client: The model collaborator.
        messages: The rendered context.
        executor: Runs the blocking client call.
        timeout: Seconds to wait; None uses config.MODEL_TIMEOUT_SECONDS.
        cancel_event: Set by the caller to abandon the call.

    Returns:
        The model's LLMResponse, or a failed one describing why there is none.
    """
    timeout = config.MODEL_TIMEOUT_SECONDS if timeout is None else timeout
    deadline = time.monotonic() + timeout
    future = executor.submit(llm_client.send, messages)

    while True:
        if cancel_event is not None and cancel_event.is_set():
            future.cancel()
            log_event("MODEL CALL CANCELLED")
            return LLMResponse.fail("The interaction was cancelled.")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            future.cancel()
            log_event("MODEL CALL TIMED OUT")
            return LLMResponse.fail(f"The model did not respond within {timeout:g} seconds.")
        try:
            response = future.result(timeout=min(POLL_INTERVAL_SECONDS, remaining))
        except FutureTimeout:
            continue
        except Exception as e:
            logging.exception("LLM client raised instead of returning a failed response.")
            return LLMResponse.fail(f"Model call failed: {e}")
        if not isinstance(response, LLMResponse):
            return LLMResponse.fail(f"Model client returned {type(response).__name__}, not LLMResponse.")
        return response


def _format_action_result(window_id: str, action_id: str, result: ActionResult) -> str:
    payload = {
        "window_id": window_id,
        "action_id": action_id,
        "success": result.success,
        "message": result.message,
        "summary": result.summary,
    }
    return f"Tool Result: {json.dumps(payload, ensure_ascii=False)}"


def _record_action_result(session: ActiveSession, window_id: str, action_id: str, result: ActionResult) -> None:
    session.conversation.append(ConversationItem(
        role=Role.USER, kind="action_result", content=_format_action_result(window_id, action_id, result),
    ))


def _reject(session: ActiveSession, window_id: str, action_id: str, error: str) -> ActionResult:
    logging.warning(f"Session '{session.id}': rejected {window_id}.{action_id}: {error}")
    session.emit(ActionRejected, window_id=window_id, action_id=action_id, error=error)
    result = ActionResult.fail(error)
    _record_action_result(session, window_id, action_id, result)
    return result


def _open_app_window(session: ActiveSession, app_name: str, target: Optional[str], apps: Mapping) -> Window:
    app = apps.get(app_name)
    if app is None:
        raise NotFound(f"Unknown application '{app_name}'.", app_name, CREATE_ACTION_ID)
    return session.windows.open(app.create_window(session.id, target))


def _follow_launch_request(session: ActiveSession, result: ActionResult, apps: Mapping) -> ActionResult:
    """Opens the application a launcher action asked for; a launch failure fails the action."""
    app_name = result.data.get("launch")
    try:
        window = _open_app_window(session, app_name, None, apps)
    except (NotFound, ValueError, OSError) as e:
        logging.warning(f"Session '{session.id}': could not launch '{app_name}': {e}")
        return ActionResult.fail(str(e))
    return result.model_copy(update={"message": f"Opened window '{window.id}'."})


@trace
def dispatch_action(
    session: ActiveSession,
    call: ActionCall,
    registry: ActionHandlerRegistry,
    apps: Optional[Mapping] = None,
) -> tuple[bool, ActionResult]:
    """
    Resolves, validates and executes an action call.

    Returns:
        A pair `(dispatched, result)`. `dispatched` is False when the call was
        rejected before reaching a handler (unknown window or action, or
        invalid parameters); the result then carries the rejection reason.
    """
    window = session.windows.get(call.window_id)
    try:
        if window is None:
            raise NotFound(f"Window '{call.window_id}' is not open.", call.window_id)
        definition = resolve_action(window, call.action_id)
        if definition is None:
            if call.action_id == "close":
                raise NotFound(f"Window '{call.window_id}' cannot be closed.", call.window_id, call.action_id)
            raise NotFound(f"Window '{call.window_id}' has no action '{call.action_id}'.", call.window_id, call.action_id)
        params = validate_params(definition.params, call.params)
    except (NotFound, ValidationError) as e:
        return False, _reject(session, call.window_id, call.action_id, str(e))

    session.state = TurnState.DISPATCHING_ACTION
    session.emit(ActionInvoked, window_id=call.window_id, action_id=call.action_id, params=params)
    context = ActionContext(
        session_id=session.id, window_id=call.window_id, action_id=call.action_id,
        params=params, window=window,
    )
    result = execute_action(registry, definition, context)
    if result.success and isinstance(result.data, dict) and "launch" in result.data:
        result = _follow_launch_request(session, result, apps or {})

    _record_action_result(session, call.window_id, call.action_id, result)
    session.emit(
        ActionCompleted,
        window_id=call.window_id, action_id=call.action_id,
        success=result.success, message=result.message, summary=result.summary,
    )

    if result.should_close or (result.success and window.options.auto_close_on_action):
        session.windows.close(call.window_id, summary=result.summary)
    elif result.should_refresh:
        try:
            session.windows.touch(call.window_id)
        except Exception:
            logging.exception(f"Refreshing window '{call.window_id}' failed in session '{session.id}'.")
    return True, result


@trace
def launch_app(session: ActiveSession, call: CreateCall, apps: Mapping) -> tuple[bool, ActionResult]:
    """
    Opens the window of an installed application at the model's request.

    The registry publishes WindowOpened for the new window and the outcome is
    recorded as an action-result item. An unknown application or a bad
    `target` is rejected like an invalid action call.

    Returns:
        A pair `(launched, result)`.
    """
    try:
        if call.app_name not in apps:
            raise NotFound(f"Unknown application '{call.app_name}'.", call.app_name, CREATE_ACTION_ID)
        session.state = TurnState.DISPATCHING_ACTION
        window = _open_app_window(session, call.app_name, call.target, apps)
    except (NotFound, ValueError, OSError) as e:
        return False, _reject(session, call.app_name, CREATE_ACTION_ID, str(e))

    result = ActionResult.ok(
        message=f"Opened window '{window.id}'.", summary=f"launched {call.app_name}",
        data={"window_id": window.id}, should_refresh=False,
    )
    _record_action_result(session, window.id, CREATE_ACTION_ID, result)
    return True, result


@trace
def process_assistant_output(
    session: ActiveSession,
    content: str,
    registry: ActionHandlerRegistry,
    staged_user_item: Optional[ConversationItem] = None,
    usage: Optional[TokenUsage] = None,
    model: Optional[str] = None,
    apps: Optional[Mapping] = None,
) -> InteractionResponse:
    """
    Commits an assistant reply and acts on it.

    Args:
        session: The session, with its lock held by the caller.
        content: The assistant's raw output.
        registry: Handlers for any proposed action.
        staged_user_item: The user message that prompted the reply, committed
            ahead of it; None when injecting output without a user message.
        usage: Token usage of the model call that produced `content`.
        model: The model that produced `content`.
        apps: Installed applications by name, for create calls and launcher
            requests.

    Returns:
        The InteractionResponse of the turn.
    """
    usage = usage or TokenUsage()
    apps = apps or {}
    if staged_user_item is not None:
        session.conversation.append(staged_user_item)
    session.conversation.append(ConversationItem(role=Role.ASSISTANT, content=content))

    try:
        parsed = parse_response(content)
    except ResponseParseError as e:
        logging.warning(f"Session '{session.id}': unparseable action markup: {e}")
        return InteractionResponse.fail(f"Could not parse the model's action call: {e}", content=content, model=model, usage=usage)

    if isinstance(parsed, PlainReply):
        return InteractionResponse(success=True, content=content, model=model, usage=usage)

    if isinstance(parsed, CreateCall):
        dispatched, result = launch_app(session, parsed, apps)
    else:
        dispatched, result = dispatch_action(session, parsed, registry, apps)
    if not dispatched:
        return InteractionResponse.fail(
            result.message, content=content, model=model, action=parsed, action_result=result, usage=usage,
        )
    return InteractionResponse(
        success=True, content=content, model=model, action=parsed, action_result=result, usage=usage,
    )


@trace
def run_turn(
    session: ActiveSession,
    text: str,
    llm_client: LLMClient,
    registry: ActionHandlerRegistry,
    executor: Executor,
    options: Optional[RenderOptions] = None,
    cancel_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    apps: Optional[Mapping] = None,
) -> InteractionResponse:
    """
    Executes one full turn for a user message.

    The user message is staged, not stored, until the model has answered;
    if the model call fails, times out or is cancelled, the session's
    conversation is left untouched and an InteractionFailed event is
    published.

    Args:
        session: The session, with its lock held by the caller.
        text: The user's message.
        llm_client: The model collaborator.
        registry: Handlers for any proposed action.
        executor: Runs the blocking model call.
        options: The render budget; configuration defaults when omitted.
        cancel_event: Set by the caller to abandon the turn.
        timeout: Seconds to wait for the model.
        apps: Installed applications by name.

    Returns:
        The InteractionResponse of the turn.
    """
    staged = ConversationItem(role=Role.USER, content=text)
    try:
        session.state = TurnState.AWAITING_MODEL
        document = _renderer.render(
            session.windows.list(),
            session.conversation.snapshot() + (staged,),
            options,
            system_prompt=session.effective_system_prompt,
        )
        response = call_model(llm_client, document.to_messages(), executor, timeout, cancel_event)
        if not response.success:
            error = response.error or "The model call failed."
            logging.warning(f"Session '{session.id}': model call failed: {error}")
            session.emit(InteractionFailed, error=error)
            return InteractionResponse.fail(error, model=response.model, usage=response.usage)

        return process_assistant_output(
            session, response.content, registry,
            staged_user_item=staged, usage=response.usage, model=response.model, apps=apps,
        )
    except Exception as e:
        error_message = f"An error occurred during the interaction: {e}"
        logging.exception(error_message)
        session.emit(InteractionFailed, error=error_message)
        return InteractionResponse.fail(error_message)
    finally:
        session.state = TurnState.IDLE
        logging.info(f"Turn ended for session '{session.id}'.")
