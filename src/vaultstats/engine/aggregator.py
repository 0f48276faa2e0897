"""Incremental vault statistics.

``AggregationEngine`` turns file lifecycle events into signed deltas on a
``Metrics`` aggregate. For every tracked file it keeps the contribution it
last applied, so a deletion subtracts exactly what was once added and an
edit swaps old for new in one atomic step. Nothing is ever recounted from
scratch except on an explicit ``scan()``.

Threading model: events for different files may be handled concurrently;
events for one file are serialized by a per-path lock and must be delivered
in the order they happened (``run()`` consumes a single queue in arrival
order). Contributions are computed outside every lock; only the
cache-and-aggregate update is serialized.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from ..config import StatsConfig
from ..metrics import Metrics
from ..models import Contribution, FileEvent, FileStat, timestamp_to_datetime
from ..parsing import DocumentSource, MarkdownDocumentSource
from ..tokenizers import default_registry
from ..word_counter import WordCounter
from .queue import EventQueue
from .reconciler import Reconciler, matches_ignore_pattern

logger = logging.getLogger(__name__)

NOTE = "note"
ATTACHMENT = "attachment"
OTHER = "other"


@dataclass
class ScanStats:
    """Statistics from a full rescan."""

    files_scanned: int = 0
    files_failed: int = 0
    elapsed_seconds: float = 0.0


@dataclass
class AggregationEngine:
    cfg: StatsConfig
    metrics: Metrics | None = None
    source: DocumentSource | None = None
    counter: WordCounter | None = None

    def __post_init__(self) -> None:
        if self.metrics is None:
            self.metrics = Metrics(changelog_size=self.cfg.changelog_size)
        if self.source is None:
            self.source = MarkdownDocumentSource(self.cfg.vault_root, max_bytes=self.cfg.max_note_bytes)
        if self.counter is None:
            self.counter = WordCounter(default_registry(self.cfg.count_types, self.cfg.zero_types))

        self._cache: dict[str, Contribution] = {}
        self._commit_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        # Entries disappear once no handler holds the lock
        self._path_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._closed = threading.Event()
        self._active_path: str | None = None

    # -- bookkeeping -------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def active_path(self) -> str | None:
        return self._active_path

    def tracked_paths(self) -> list[str]:
        with self._commit_lock:
            return sorted(self._cache)

    def cached_contribution(self, rel_path: str) -> Contribution | None:
        with self._commit_lock:
            return self._cache.get(rel_path)

    def _lock_for(self, rel_path: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._path_locks.get(rel_path)
            if lock is None:
                lock = self._path_locks[rel_path] = threading.Lock()
            return lock

    def classify(self, rel_path: str) -> str | None:
        """note / attachment / other, or None for ignored paths."""
        if matches_ignore_pattern(rel_path, self.cfg.ignore):
            return None
        suffix = Path(rel_path).suffix.lower()
        if suffix in self.cfg.note_suffixes:
            return NOTE
        if not self.cfg.attachment_suffixes or suffix in self.cfg.attachment_suffixes:
            return ATTACHMENT
        return OTHER

    @staticmethod
    def _category(contribution: Contribution) -> str | None:
        if not contribution.tracked:
            return None
        if contribution.is_note:
            return NOTE
        if contribution.is_attachment:
            return ATTACHMENT
        return OTHER

    # -- contributions -----------------------------------------------------

    def compute_contribution(self, rel_path: str, stat: FileStat | None = None) -> Contribution | None:
        """Contribution of one file as it is now.

        Returns None for ignored paths. Read or parse failures are logged and
        yield an empty contribution, so the file counts for nothing until a
        later event computes it successfully.
        """
        kind = self.classify(rel_path)
        if kind is None:
            return None

        if stat is None:
            try:
                stat = FileStat.from_path(self.cfg.vault_root / rel_path)
            except OSError as e:
                logger.warning(f"{rel_path}: cannot stat: {e}")
                return Contribution.empty()

        if kind != NOTE:
            return Contribution(is_attachment=kind == ATTACHMENT, size=stat.size)

        try:
            text = self.source.read_text(rel_path)
            regions = self.source.get_typed_regions(rel_path, text)
            links = self.source.get_link_count(rel_path, text)
            words = self.counter.count(text, regions, path=rel_path)
        except Exception as e:
            logger.warning(f"{rel_path}: read/parse failed: {e}")
            return Contribution.empty()

        return Contribution(is_note=True, size=stat.size, link_count=links, word_count=words)

    def _commit(self, rel_path: str, new: Contribution) -> bool:
        """Record ``new`` as the file's contribution and apply the delta.

        Returns False if the engine was shut down while ``new`` was being
        computed; the result is then discarded.
        """
        with self._commit_lock:
            if self.closed:
                logger.debug(f"{rel_path}: engine closed, discarding computed contribution")
                return False
            old = self._cache.get(rel_path)
            self._cache[rel_path] = new
            if old is None:
                self.metrics.increment(new)
            else:
                self.metrics.replace(old, new)
            return True

    # -- event handlers ----------------------------------------------------

    def on_created(self, rel_path: str, stat: FileStat | None = None) -> None:
        with self._lock_for(rel_path):
            if self.cached_contribution(rel_path) is not None:
                logger.debug(f"{rel_path}: created while already tracked; treating as content change")
            self._upsert(rel_path, stat)

    def on_modified(self, rel_path: str, stat: FileStat | None = None) -> None:
        with self._lock_for(rel_path):
            if self.cached_contribution(rel_path) is None:
                logger.debug(f"{rel_path}: modified but not tracked; treating as creation")
            self._upsert(rel_path, stat)
        if rel_path == self._active_path:
            self.on_active_document_changed(rel_path, stat)

    def _upsert(self, rel_path: str, stat: FileStat | None) -> None:
        new = self.compute_contribution(rel_path, stat)
        if new is None:
            return
        self._commit(rel_path, new)

    def on_deleted(self, rel_path: str, is_directory: bool = False) -> None:
        if is_directory:
            prefix = rel_path.rstrip("/") + "/"
            for child in [p for p in self.tracked_paths() if p.startswith(prefix)]:
                self.on_deleted(child)
            return

        with self._lock_for(rel_path):
            with self._commit_lock:
                if self.closed:
                    return
                old = self._cache.pop(rel_path, None)
                if old is not None:
                    self.metrics.decrement(old)
                # Untracked deletions are expected while warming up; nothing to subtract.
        if rel_path == self._active_path:
            self._active_path = None
            if not self.closed:
                self.metrics.set_active_document_state(None, None, 0)

    def on_renamed(self, rel_path: str, new_rel_path: str, is_directory: bool = False) -> None:
        if is_directory:
            src_prefix = rel_path.rstrip("/") + "/"
            dst_prefix = new_rel_path.rstrip("/") + "/"
            for child in [p for p in self.tracked_paths() if p.startswith(src_prefix)]:
                self.on_renamed(child, dst_prefix + child[len(src_prefix):])
            return

        if self.classify(new_rel_path) is None:
            self.on_deleted(rel_path)
            return

        if rel_path == new_rel_path:
            return

        first, second = sorted((rel_path, new_rel_path))
        with self._lock_for(first), self._lock_for(second):
            with self._commit_lock:
                if self.closed:
                    return
                moved = self._cache.pop(rel_path, None)
                if moved is not None:
                    overwritten = self._cache.pop(new_rel_path, None)
                    if overwritten is not None:
                        self.metrics.decrement(overwritten)
                    self._cache[new_rel_path] = moved
            if moved is None:
                logger.debug(f"{rel_path}: renamed but not tracked; treating {new_rel_path} as created")
                self._upsert(new_rel_path, None)
            elif self._category(moved) != self.classify(new_rel_path):
                # The suffix changed the file kind; recount at the new path
                logger.debug(f"{rel_path} -> {new_rel_path}: file kind changed; recounting")
                self._upsert(new_rel_path, None)

        if rel_path == self._active_path:
            self._active_path = new_rel_path

    def on_active_document_changed(self, rel_path: str | None, stat: FileStat | None = None) -> None:
        """Recompute the open document's word count and timestamps.

        Independent of the vault totals: it overwrites the active-document
        fields and never feeds ``words``.
        """
        self._active_path = rel_path
        if rel_path is None:
            if not self.closed:
                self.metrics.set_active_document_state(None, None, 0)
            return

        if stat is None:
            try:
                stat = FileStat.from_path(self.cfg.vault_root / rel_path)
            except OSError as e:
                logger.warning(f"{rel_path}: cannot stat active document: {e}")
                stat = None

        words = 0
        if self.classify(rel_path) == NOTE:
            words = self.counter.count_document(self.source, rel_path)

        if self.closed or self._active_path != rel_path:
            return
        self.metrics.set_active_document_state(
            timestamp_to_datetime(stat.ctime if stat else None),
            timestamp_to_datetime(stat.mtime if stat else None),
            words,
        )

    def handle(self, event: FileEvent) -> None:
        """Dispatch one event. Never raises: failures are logged and absorbed."""
        try:
            if event.kind == "created":
                self.on_created(event.rel_path, event.stat)
            elif event.kind == "modified":
                self.on_modified(event.rel_path, event.stat)
            elif event.kind == "deleted":
                self.on_deleted(event.rel_path, is_directory=event.is_directory)
            elif event.kind == "renamed":
                if not event.new_rel_path:
                    logger.warning(f"{event.rel_path}: rename event without destination; ignored")
                    return
                self.on_renamed(event.rel_path, event.new_rel_path, is_directory=event.is_directory)
            elif event.kind == "active":
                self.on_active_document_changed(event.rel_path or None, event.stat)
            else:
                logger.warning(f"Unknown event kind {event.kind!r} for {event.rel_path}")
        except Exception:
            logger.exception(f"Error processing {event.kind} event for {event.rel_path}")

    # -- full rescan -------------------------------------------------------

    def scan(self) -> ScanStats:
        """Rebuild the aggregate from the files currently in the vault.

        Resets the totals, computes every contribution in a thread pool,
        applies them in one step and notifies once. Must not overlap with
        event handling.
        """
        start = time.time()
        rec = Reconciler(self.cfg.vault_root, self.cfg.ignore)
        entries = rec.scan_files()
        logger.info(f"Found {len(entries)} files to count")

        with ThreadPoolExecutor(max_workers=self.cfg.scan_workers) as executor:
            results = list(executor.map(lambda e: self.compute_contribution(e[0], e[1]), entries))

        failed = 0
        with self._commit_lock:
            if self.closed:
                return ScanStats(files_scanned=len(entries), elapsed_seconds=time.time() - start)
            self.metrics.reset()
            self._cache.clear()
            for (rel, _), contribution in zip(entries, results):
                if contribution is None:
                    continue
                if not contribution.tracked:
                    failed += 1
                self._cache[rel] = contribution
            self.metrics.increment_all(self._cache.values())

        if self._active_path is not None:
            self.on_active_document_changed(self._active_path)

        elapsed = time.time() - start
        logger.info(f"Scan complete: {len(entries)} files, {failed} failed in {elapsed:.1f}s")
        return ScanStats(files_scanned=len(entries), files_failed=failed, elapsed_seconds=elapsed)

    # -- event loop --------------------------------------------------------

    def run(self, q: EventQueue, stop: threading.Event | None = None) -> None:
        """Consume events from ``q`` in arrival order until stopped or shut down."""
        stop = stop or threading.Event()
        while not stop.is_set() and not self.closed:
            try:
                event = q.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.handle(event)
            finally:
                q.task_done()

    def shutdown(self) -> None:
        """Stop applying results; in-flight computations are discarded."""
        self._closed.set()
