"""Running vault totals with change notification.

``Metrics`` is the only shared mutable state in the package. All mutation
goes through ``increment`` / ``decrement`` / ``replace`` / ``reset`` /
``set_active_document_state``, serialized by one lock, and readers either
take a ``snapshot()`` or read the properties (each of which takes the lock).

The "updated" notification carries no payload contract: subscribers receive
the ``Metrics`` instance and must re-read current values, since a downstream
debouncer may coalesce several notifications into one.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .models import Contribution, MetricsSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[["Metrics"], Any]

_COUNTERS = ("files", "notes", "attachments", "size", "links", "words")


@dataclass(frozen=True)
class ChangelogEntry:
    op: str  # increment|decrement|replace|reset
    at: float
    old: Optional[Contribution] = None
    new: Optional[Contribution] = None


def _deltas(contribution: Any) -> dict[str, int]:
    """Counter deltas for one contribution; missing fields count as zero."""
    if contribution is None:
        return dict.fromkeys(_COUNTERS, 0)
    tracked = bool(getattr(contribution, "tracked", True))
    return {
        "files": 1 if tracked else 0,
        "notes": 1 if tracked and getattr(contribution, "is_note", False) else 0,
        "attachments": 1 if tracked and getattr(contribution, "is_attachment", False) else 0,
        "size": int(getattr(contribution, "size", 0) or 0),
        "links": int(getattr(contribution, "link_count", 0) or 0),
        "words": int(getattr(contribution, "word_count", 0) or 0),
    }


class Metrics:
    def __init__(self, changelog_size: int = 0) -> None:
        self._lock = threading.RLock()
        self._listeners: dict[int, Listener] = {}
        self._next_token = 0
        self._changelog: deque[ChangelogEntry] | None = (
            deque(maxlen=changelog_size) if changelog_size > 0 else None
        )
        self._counters: dict[str, int] = dict.fromkeys(_COUNTERS, 0)
        self._note_words = 0
        self._created_at: datetime | None = None
        self._updated_at: datetime | None = None

    # -- read access -------------------------------------------------------

    @property
    def files(self) -> int:
        with self._lock:
            return self._counters["files"]

    @property
    def notes(self) -> int:
        with self._lock:
            return self._counters["notes"]

    @property
    def attachments(self) -> int:
        with self._lock:
            return self._counters["attachments"]

    @property
    def size(self) -> int:
        with self._lock:
            return self._counters["size"]

    @property
    def links(self) -> int:
        with self._lock:
            return self._counters["links"]

    @property
    def words(self) -> int:
        with self._lock:
            return self._counters["words"]

    @property
    def note_words(self) -> int:
        with self._lock:
            return self._note_words

    @property
    def created_at(self) -> datetime | None:
        with self._lock:
            return self._created_at

    @property
    def updated_at(self) -> datetime | None:
        with self._lock:
            return self._updated_at

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                note_words=self._note_words,
                created_at=self._created_at,
                updated_at=self._updated_at,
                **self._counters,
            )

    @property
    def changelog(self) -> list[ChangelogEntry]:
        with self._lock:
            return list(self._changelog) if self._changelog is not None else []

    # -- mutation ----------------------------------------------------------

    def increment(self, contribution: Contribution | None) -> None:
        with self._lock:
            self._apply(_deltas(contribution), 1)
            self._record("increment", new=contribution)
        self.notify()

    def decrement(self, contribution: Contribution | None) -> None:
        with self._lock:
            self._apply(_deltas(contribution), -1)
            self._record("decrement", old=contribution)
        self.notify()

    def increment_all(self, contributions: Iterable[Contribution]) -> None:
        """Add many contributions at once with a single notification."""
        with self._lock:
            for contribution in contributions:
                self._apply(_deltas(contribution), 1)
                self._record("increment", new=contribution)
        self.notify()

    def replace(self, old: Contribution | None, new: Contribution | None) -> None:
        """Swap one file's contribution for another in a single step.

        Readers never observe the state between the subtraction and the
        addition, and only one notification is emitted.
        """
        with self._lock:
            self._apply(_deltas(old), -1)
            self._apply(_deltas(new), 1)
            self._record("replace", old=old, new=new)
        self.notify()

    def reset(self) -> None:
        """Zero every counter and clear the active document state. Does not notify."""
        with self._lock:
            self._counters = dict.fromkeys(_COUNTERS, 0)
            self._note_words = 0
            self._created_at = None
            self._updated_at = None
            self._record("reset")

    def set_active_document_state(
        self,
        created_at: datetime | None,
        updated_at: datetime | None,
        word_count: int,
    ) -> None:
        with self._lock:
            self._created_at = created_at
            self._updated_at = updated_at
            self._note_words = max(0, int(word_count))
        self.notify()

    def _apply(self, deltas: dict[str, int], sign: int) -> None:
        for name, delta in deltas.items():
            value = self._counters[name] + sign * delta
            if value < 0:
                logger.error(
                    f"Metrics invariant violated: {name} would become {value}; clamping to 0 "
                    "(unpaired increment/decrement)"
                )
                value = 0
            self._counters[name] = value

    def _record(self, op: str, old: Contribution | None = None, new: Contribution | None = None) -> None:
        if self._changelog is not None:
            self._changelog.append(ChangelogEntry(op=op, at=time.time(), old=old, new=new))

    # -- notification ------------------------------------------------------

    def on_updated(self, listener: Listener) -> int:
        """Subscribe to "updated"; returns a token for ``off``."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener
            return token

    def off(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def notify(self) -> None:
        """Emit "updated" to every listener, outside the lock."""
        with self._lock:
            listeners = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Metrics listener failed")
