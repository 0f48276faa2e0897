from __future__ import annotations

import queue

from ..models import FileEvent

class EventQueue:
    """Single stream of file lifecycle events, consumed in arrival order."""

    def __init__(self) -> None:
        self._q: "queue.Queue[FileEvent]" = queue.Queue()

    def put(self, event: FileEvent) -> None:
        self._q.put(event)

    def get(self, timeout: float | None = None) -> FileEvent:
        return self._q.get(timeout=timeout)

    def task_done(self) -> None:
        self._q.task_done()

    def join(self) -> None:
        self._q.join()

    def empty(self) -> bool:
        return self._q.empty()

    def qsize(self) -> int:
        return self._q.qsize()
