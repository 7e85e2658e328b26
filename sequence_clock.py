"""
A per-session monotonic counter.

Every observable change in a session (a message appended, a window opened,
an action completed) is stamped with a value from the session's clock, which
gives observers a total order over that session's history.
"""
import threading


class SequenceClock:
    """Issues strictly increasing integers, starting after `seed`."""

    def __init__(self, seed: int = 0):
        self._lock = threading.Lock()
        self._current = seed

    @property
    def current(self) -> int:
        """The last value issued, or the seed if nothing has been issued yet."""
        with self._lock:
            return self._current

    def next(self) -> int:
        with self._lock:
            self._current += 1
            return self._current

    def reset(self, seed: int = 0) -> None:
        """Restarts the clock, e.g. when a session is restored from a snapshot."""
        with self._lock:
            self._current = seed
