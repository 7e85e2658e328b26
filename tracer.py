"""
Lightweight call-tree tracing for the orchestration engine.

Functions decorated with @trace record their entry, exit and return value
into a nested log that mirrors the call stack. Each thread keeps its own
stack, so concurrent turns of different sessions produce separate top-level
entries instead of interleaving into one another.
"""
import functools
import inspect
import os
import re
import threading


def _sanitize_repr(value) -> str:
    """
    Cleans the string representation of an object by removing memory addresses
    and other volatile information.
    """
    rep = repr(value)
    rep = re.sub(r"\s+at\s+0x[0-9a-fA-F]+", "", rep)
    if len(rep) > 500:
        rep = rep[:497] + "..."
    return rep


def _clean_trace_log(log):
    """
    Recursively removes entries with empty 'nested_calls' lists from a trace log.
    """
    if isinstance(log, list):
        return [entry for entry in (_clean_trace_log(e) for e in log) if entry]
    if isinstance(log, dict):
        if "nested_calls" in log:
            log["nested_calls"] = _clean_trace_log(log["nested_calls"])
            if not log["nested_calls"]:
                del log["nested_calls"]
        return log
    return log


class Tracer:
    """
    Records the execution flow of decorated functions into a hierarchical,
    nested structure. The finished log is shared; the call stacks are per thread.
    """

    def __init__(self, enabled: bool = True, max_entries: int = 1000):
        self.enabled = enabled
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._local = threading.local()
        self.trace_log = []

    @property
    def call_stack(self) -> list:
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    def reset(self) -> None:
        """Clears the trace log. Stacks of calls still in flight are left alone."""
        with self._lock:
            self.trace_log = []

    def start_trace(self, module: str, func_name: str) -> None:
        """Starts a new trace entry for a function call."""
        trace_entry = {
            "function": f"{module}.{func_name}",
            "thread": threading.current_thread().name,
            "nested_calls": [],
        }
        stack = self.call_stack
        if stack:
            stack[-1]["nested_calls"].append(trace_entry)
        else:
            with self._lock:
                self.trace_log.append(trace_entry)
                self._truncate()
        stack.append(trace_entry)

    def end_trace(self, return_value, is_exception: bool = False) -> None:
        """Ends the trace for the current function, adding its return value."""
        stack = self.call_stack
        if not stack:
            return

        last_entry = stack.pop()
        if "nested_calls" in last_entry and not last_entry["nested_calls"]:
            del last_entry["nested_calls"]

        if is_exception:
            last_entry["exception"] = _sanitize_repr(return_value)
        elif return_value is not None:
            is_empty_container = isinstance(return_value, (list, dict, tuple, str)) and not return_value
            if not is_empty_container:
                last_entry["return_value"] = _sanitize_repr(return_value)

    def log_event(self, event_name: str, module: str) -> None:
        """Appends a custom event marker at the current depth."""
        event_entry = {"type": "EVENT", "event_name": f"{module}.{event_name}"}
        stack = self.call_stack
        if stack:
            stack[-1]["nested_calls"].append(event_entry)
        else:
            with self._lock:
                self.trace_log.append(event_entry)
                self._truncate()

    def _truncate(self) -> None:
        # Caller holds the lock. Oldest top-level entries go first.
        overflow = len(self.trace_log) - self.max_entries
        if overflow > 0:
            del self.trace_log[:overflow]

    def get_trace(self) -> list:
        """
        Returns the completed trace log after performing a final cleanup pass
        to remove empty 'nested_calls' lists.
        """
        with self._lock:
            return _clean_trace_log(list(self.trace_log))


# Global instance of the tracer
global_tracer = Tracer()


def log_event(event_name: str) -> None:
    """
    Manually logs a custom event to the global tracer.
    """
    if not global_tracer.enabled:
        return
    caller_frame = inspect.stack()[1]
    module_name = os.path.basename(caller_frame.filename).replace(".py", "")
    global_tracer.log_event(event_name, module_name)


def trace(func):
    """
    A decorator that logs the entry and exit of a function call
    to the global_tracer in a nested format.
    """
    module_name = func.__module__.rsplit(".", 1)[-1]

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if not global_tracer.enabled:
            return func(*args, **kwargs)

        global_tracer.start_trace(module_name, func.__qualname__)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            global_tracer.end_trace(e, is_exception=True)
            raise
        global_tracer.end_trace(result)
        return result

    return wrapper
