from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from ..models import FileEvent, FileStat
from .queue import EventQueue
from .reconciler import Reconciler, matches_ignore_pattern

logger = logging.getLogger(__name__)


@dataclass
class ChangeDetector:
    """Filesystem event source using watchdog.

    Translates watchdog callbacks into ``FileEvent`` objects on an
    ``EventQueue``. Modification bursts for one path are coalesced: the
    event is emitted once the path has been quiet for ``debounce_ms``.
    Moves into an ignored location become deletions, moves out of one
    become creations.
    """
    root: Path
    q: EventQueue
    ignore: list[str] = field(default_factory=list)
    debounce_ms: int = 500

    def __post_init__(self) -> None:
        self._pending: dict[str, float] = {}
        self._pending_lock = threading.Lock()

    def _rel(self, path: str | bytes, root: Path) -> str | None:
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        try:
            return str(Path(path).relative_to(root)).replace("\\", "/")
        except ValueError:
            return None

    def _stat(self, root: Path, rel: str) -> FileStat | None:
        try:
            return FileStat.from_path(root / rel)
        except OSError:
            return None

    def _emit(self, kind: str, rel: str, root: Path, new_rel: str | None = None, is_directory: bool = False) -> None:
        stat = None
        if kind in ("created", "modified"):
            stat = self._stat(root, rel)
        logger.debug(f"[watch] {kind}: {rel}" + (f" -> {new_rel}" if new_rel else ""))
        self.q.put(FileEvent(kind=kind, rel_path=rel, stat=stat, new_rel_path=new_rel, is_directory=is_directory))

    def mark_modified(self, rel: str) -> None:
        with self._pending_lock:
            self._pending[rel] = time.monotonic()

    def flush_pending(self, root: Path, force: bool = False) -> int:
        """Emit modifications whose quiet period has elapsed; returns how many."""
        now = time.monotonic()
        with self._pending_lock:
            due = [rel for rel, last in self._pending.items()
                   if force or (now - last) * 1000 >= self.debounce_ms]
            for rel in due:
                del self._pending[rel]
        for rel in due:
            self._emit("modified", rel, root)
        return len(due)

    def _drop_pending(self, rel: str) -> bool:
        with self._pending_lock:
            return self._pending.pop(rel, None) is not None

    def build_handler(self, root: Path):
        from watchdog.events import FileSystemEventHandler

        outer = self
        ignore_patterns = self.ignore

        class Handler(FileSystemEventHandler):
            def _should_ignore(self, rel: str) -> bool:
                return matches_ignore_pattern(rel, ignore_patterns)

            def on_created(self, event):  # noqa
                rel = outer._rel(event.src_path, root)
                if rel is None or self._should_ignore(rel):
                    return
                if event.is_directory:
                    # Files may land in a new folder before the watch on it is armed
                    for child, _ in Reconciler(root, ignore_patterns).scan_files(under=rel):
                        outer._emit("created", child, root)
                    return
                outer._emit("created", rel, root)

            def on_modified(self, event):  # noqa
                if event.is_directory:
                    return
                rel = outer._rel(event.src_path, root)
                if rel is None or self._should_ignore(rel):
                    return
                outer.mark_modified(rel)

            def on_deleted(self, event):  # noqa
                rel = outer._rel(event.src_path, root)
                if rel is None or self._should_ignore(rel):
                    return
                outer._drop_pending(rel)
                outer._emit("deleted", rel, root, is_directory=event.is_directory)

            def on_moved(self, event):  # noqa
                rel_src = outer._rel(event.src_path, root)
                rel_dst = outer._rel(event.dest_path, root)
                src_ignored = rel_src is None or self._should_ignore(rel_src)
                dst_ignored = rel_dst is None or self._should_ignore(rel_dst)

                if src_ignored and dst_ignored:
                    return
                if src_ignored:
                    if event.is_directory:
                        for child, _ in Reconciler(root, ignore_patterns).scan_files(under=rel_dst):
                            outer._emit("created", child, root)
                    else:
                        outer._emit("created", rel_dst, root)
                elif dst_ignored:
                    outer._drop_pending(rel_src)
                    outer._emit("deleted", rel_src, root, is_directory=event.is_directory)
                else:
                    was_pending = outer._drop_pending(rel_src)
                    outer._emit("renamed", rel_src, root, new_rel=rel_dst, is_directory=event.is_directory)
                    if was_pending:
                        outer.mark_modified(rel_dst)

        return Handler()

    def watch(self, stop: threading.Event | None = None, ready: threading.Event | None = None) -> None:
        """Run the observer until ``stop`` is set; ``ready`` is set once it is armed."""
        try:
            from watchdog.observers import Observer  # type: ignore
        except Exception as e:
            raise RuntimeError("watchdog required for watch mode") from e

        # Resolve symlinks to match watchdog's resolved paths (e.g., /tmp -> /private/tmp on macOS)
        root = self.root.resolve()
        stop = stop or threading.Event()

        observer = Observer()
        observer.schedule(self.build_handler(root), str(root), recursive=True)
        observer.start()
        logger.info(f"[watch] Watching {root}")
        if ready is not None:
            ready.set()
        try:
            while not stop.is_set():
                stop.wait(0.25)
                self.flush_pending(root)
        finally:
            observer.stop()
            observer.join()
            self.flush_pending(root, force=True)
