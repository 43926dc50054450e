from __future__ import annotations

from threading import Lock


class SelectionCounter:
    """Process-wide call counter used to pick the next bird.

    Starts at -1 because the counter is always incremented before it is read,
    so the first request maps to index 0.
    """

    def __init__(self, start: int = -1) -> None:
        self.lock = Lock()
        self._value = start

    def increment(self) -> int:
        with self.lock:
            self._value += 1
            return self._value

    def next_index(self, n: int) -> int:
        if n <= 0:
            raise ValueError("Cannot select from an empty dataset.")
        return self.increment() % n

    @property
    def value(self) -> int:
        with self.lock:
            return self._value
