"""
Applications that ship with the engine.

The file explorer exposes a directory tree to the model as a window. Every
path it accepts is resolved inside the explorer's root directory; requests
that would escape the root are refused. Each session gets its own browsing
state (current directory and the file last opened), and the window content
is re-rendered from that state whenever the window is refreshed.

The launcher is a pinned, non-closable window listing the installed
applications. Its `open` action does not open anything itself; it returns a
launch request (`data={"launch": <app>}`) that the orchestrator carries out.
"""
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import config
from action_agent import ActionHandlerRegistry
from components import Text, Tree, TreeNode, VStack
from data_models import ActionContext, ActionDefinition, ActionParamSchema, ActionResult, Window, WindowOptions
from tracer import trace

FILE_EXPLORER = "file_explorer"
LAUNCHER = "launcher"
# Maximum number of characters of an opened file shown in the window.
MAX_PREVIEW_CHARS = 4000
MAX_ENTRIES = 160
IGNORED_DIRS = {".git", "__pycache__", ".ipynb_checkpoints"}


@trace
def get_safe_path(root: str, relative_path: str) -> str:
    """
    Resolves `relative_path` inside `root`, preventing path traversal.

    Raises:
        ValueError: The resolved path lies outside of `root`.
    """
    root = os.path.abspath(root)
    requested_path = os.path.abspath(os.path.join(root, relative_path.lstrip("/\\")))
    if os.path.commonpath([root, requested_path]) != root:
        raise ValueError("Attempted path traversal outside of the allowed directory.")
    return requested_path


def _read_file(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def _list_directory(path: str) -> list[tuple[str, bool]]:
    """Returns `(name, is_dir)` pairs, directories first, each group sorted by name."""
    entries = []
    with os.scandir(path) as it:
        for entry in it:
            if entry.is_dir() and entry.name in IGNORED_DIRS:
                continue
            entries.append((entry.name, entry.is_dir()))
    entries.sort(key=lambda e: (not e[1], e[0].lower()))
    return entries[:MAX_ENTRIES]


@dataclass
class _ExplorerState:
    # Both paths are relative to the explorer root; "" is the root itself.
    current_dir: str = ""
    opened_file: Optional[str] = None
    opened_content: Optional[str] = None


class FileExplorerApp:
    """A sandboxed file browser window with `open`, `list` and `up` actions."""

    name = FILE_EXPLORER
    description = "Browse directories and read files under the explorer root."

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or config.FILE_EXPLORER_ROOT)
        self._lock = threading.Lock()
        self._states: dict[str, _ExplorerState] = {}

    def install(self, registry: ActionHandlerRegistry) -> None:
        registry.register(f"{self.name}.open", self._handle_open)
        registry.register(f"{self.name}.list", self._handle_list)
        registry.register(f"{self.name}.up", self._handle_up)

    def _state(self, session_id: str) -> _ExplorerState:
        with self._lock:
            return self._states.setdefault(session_id, _ExplorerState())

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._states.pop(session_id, None)

    def create_window(self, session_id: str, target: Optional[str] = None) -> Window:
        """
        Builds the explorer window of a session. `target`, a path relative to
        the root, starts the window in that directory or with that file open.

        Raises:
            ValueError: `target` escapes the root or does not exist.
        """
        os.makedirs(self.root, exist_ok=True)
        state = self._state(session_id)
        if target:
            self._start_at(state, target)
        return Window(
            id=self.name,
            app_name=self.name,
            description=(
                "File explorer. Paths are relative to the explorer root. "
                "Use `open` on a file to read it or on a directory to enter it."
            ),
            content=self.render(session_id),
            content_provider=lambda: self.render(session_id),
            actions=[
                ActionDefinition(
                    id="open", label="Open a file or directory", kind=f"{self.name}.open",
                    params=ActionParamSchema.object_({"path": ActionParamSchema.string(description="Relative path.")}),
                ),
                ActionDefinition(
                    id="list", label="List a directory", kind=f"{self.name}.list",
                    params=ActionParamSchema.object_({"path": ActionParamSchema.string(required=False, default="")}),
                ),
                ActionDefinition(id="up", label="Go to the parent directory", kind=f"{self.name}.up"),
            ],
        )

    def _start_at(self, state: _ExplorerState, target: str) -> None:
        path = get_safe_path(self.root, target.strip())
        if os.path.isdir(path):
            state.current_dir = self._relative(path)
            state.opened_file = state.opened_content = None
        elif os.path.isfile(path):
            state.current_dir = self._relative(os.path.dirname(path))
            state.opened_file = self._relative(path)
            state.opened_content = _read_file(path)
        else:
            raise ValueError(f"Path not found: '{target}'.")

    def render(self, session_id: str) -> VStack:
        state = self._state(session_id)
        location = "/" + state.current_dir if state.current_dir else "/"
        children = [Text(f"Current directory: {location}")]
        try:
            entries = _list_directory(get_safe_path(self.root, state.current_dir))
        except (OSError, ValueError) as e:
            children.append(Text(f"[unreadable: {e}]"))
            entries = []
        if entries:
            children.append(Tree([TreeNode.leaf(f"{name}/" if is_dir else name) for name, is_dir in entries]))
        else:
            children.append(Text("[empty directory]"))

        if state.opened_file is not None:
            preview = state.opened_content or ""
            if len(preview) > MAX_PREVIEW_CHARS:
                preview = preview[:MAX_PREVIEW_CHARS] + "\n[... truncated]"
            children.append(Text(f"--- {state.opened_file} ---"))
            children.append(Text(preview))
        return VStack(children)

    def _relative(self, absolute_path: str) -> str:
        relative = os.path.relpath(absolute_path, self.root)
        return "" if relative == "." else relative.replace("\\", "/")

    @trace
    def _handle_open(self, context: ActionContext) -> ActionResult:
        state = self._state(context.session_id)
        requested = context.get("path", "").strip()
        try:
            path = get_safe_path(self.root, os.path.join(state.current_dir, requested))
        except ValueError as e:
            return ActionResult.fail(str(e))

        if os.path.isdir(path):
            state.current_dir = self._relative(path)
            state.opened_file = state.opened_content = None
            return ActionResult.ok(message=f"Entered directory '/{state.current_dir}'.", summary="opened")
        if not os.path.isfile(path):
            return ActionResult.fail(f"File not found: '{requested}'.")

        try:
            content = _read_file(path)
        except OSError as e:
            logging.warning(f"File explorer could not read '{path}': {e}")
            return ActionResult.fail(f"Could not read '{requested}': {e}")
        state.opened_file = self._relative(path)
        state.opened_content = content
        return ActionResult.ok(
            message=f"Opened '{state.opened_file}' ({len(content)} characters).",
            summary="opened",
            data={"path": state.opened_file, "content": content},
        )

    @trace
    def _handle_list(self, context: ActionContext) -> ActionResult:
        state = self._state(context.session_id)
        requested = context.get("path") or ""
        try:
            path = get_safe_path(self.root, os.path.join(state.current_dir, requested))
            entries = _list_directory(path)
        except (OSError, ValueError) as e:
            return ActionResult.fail(str(e))
        names = [f"{name}/" if is_dir else name for name, is_dir in entries]
        return ActionResult.ok(
            message=f"{len(names)} entries in '/{self._relative(path)}'.",
            summary="listed",
            data=names,
            should_refresh=False,
        )

    @trace
    def _handle_up(self, context: ActionContext) -> ActionResult:
        state = self._state(context.session_id)
        if not state.current_dir:
            return ActionResult.ok(message="Already at the explorer root.", should_refresh=False)
        state.current_dir = self._relative(os.path.dirname(get_safe_path(self.root, state.current_dir)))
        state.opened_file = state.opened_content = None
        return ActionResult.ok(message=f"Moved up to '/{state.current_dir}'.", summary="moved up")


class AppLauncher:
    """Lists the installed applications and lets the model open them."""

    name = LAUNCHER

    def __init__(self, apps: Callable[[], Iterable]):
        # Called on every render so the list follows the installed apps.
        self._apps = apps

    def install(self, registry: ActionHandlerRegistry) -> None:
        registry.register(f"{self.name}.open", self._handle_open)

    def forget(self, session_id: str) -> None:
        pass

    def create_window(self, session_id: str, target: Optional[str] = None) -> Window:
        return Window(
            id=self.name,
            app_name=self.name,
            description="Application launcher. Use `open` with an application name to start it.",
            content=self.render(),
            content_provider=self.render,
            actions=[
                ActionDefinition(
                    id="open", label="Open App", kind=f"{self.name}.open",
                    params=ActionParamSchema.object_({"app": ActionParamSchema.string(description="Application name.")}),
                ),
            ],
            options=WindowOptions(closable=False),
        )

    def render(self) -> VStack:
        children = [Text("Installed applications:")]
        for index, app in enumerate(self._apps(), start=1):
            line = f"{index}. {app.name}"
            if getattr(app, "description", None):
                line += f" - {app.description}"
            children.append(Text(line))
        return VStack(children)

    @trace
    def _handle_open(self, context: ActionContext) -> ActionResult:
        app_name = context.get("app", "").strip()
        if not app_name:
            return ActionResult.fail("Please specify an app name.")
        if app_name not in {app.name for app in self._apps()}:
            return ActionResult.fail(f"Unknown application '{app_name}'.")
        return ActionResult.ok(summary=f"open app {app_name}", data={"launch": app_name}, should_refresh=False)
