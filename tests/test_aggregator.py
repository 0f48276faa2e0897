"""Tests for the incremental aggregation engine."""
from __future__ import annotations

import gc
import logging
import random
import threading
from pathlib import Path

import pytest

from vaultstats.config import StatsConfig
from vaultstats.engine.aggregator import AggregationEngine
from vaultstats.engine.queue import EventQueue
from vaultstats.metrics import Metrics
from vaultstats.models import Contribution, FileEvent, FileStat, TypedRegion


def _stat(size: int) -> FileStat:
    return FileStat(size=size, ctime=1_700_000_000.0, mtime=1_700_000_100.0)


def _words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


class FakeSource:
    """In-memory document source: one paragraph region per note, links = '[[' count."""

    def __init__(self) -> None:
        self.docs: dict[str, str] = {}
        self.fail: set[str] = set()
        self.reads = 0

    def read_text(self, path: str) -> str:
        self.reads += 1
        if path in self.fail:
            raise OSError(f"cannot read {path}")
        return self.docs[path]

    def get_typed_regions(self, path: str, text: str | None = None) -> list[TypedRegion]:
        text = self.read_text(path) if text is None else text
        return [TypedRegion("paragraph", 0, len(text))]

    def get_link_count(self, path: str, text: str | None = None) -> int:
        text = self.read_text(path) if text is None else text
        return text.count("[[")


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def engine(tmp_path: Path, source: FakeSource) -> AggregationEngine:
    cfg = StatsConfig(vault_root=tmp_path)
    return AggregationEngine(cfg, source=source)


def _totals(engine: AggregationEngine) -> dict[str, int]:
    s = engine.metrics.snapshot()
    return {"files": s.files, "notes": s.notes, "attachments": s.attachments,
            "size": s.size, "links": s.links, "words": s.words}


class TestScenarios:
    """Create, delete and modify sequences with known outcomes."""

    def test_create_create_delete(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(5)
        engine.on_created("A.md", _stat(100))
        assert _totals(engine) == {"files": 1, "notes": 1, "attachments": 0, "size": 100, "links": 0, "words": 5}

        engine.on_created("B.png", _stat(50))
        assert _totals(engine) == {"files": 2, "notes": 1, "attachments": 1, "size": 150, "links": 0, "words": 5}

        engine.on_deleted("A.md")
        assert _totals(engine) == {"files": 1, "notes": 0, "attachments": 1, "size": 50, "links": 0, "words": 0}

    def test_modify_applies_exact_delta(self, engine: AggregationEngine, source: FakeSource):
        """Going from 5 to 8 words moves the total by exactly +3 in one notification."""
        source.docs["A.md"] = _words(5)
        source.docs["C.md"] = _words(10)
        engine.on_created("A.md", _stat(100))
        engine.on_created("C.md", _stat(10))

        seen: list[int] = []
        engine.metrics.on_updated(lambda m: seen.append(m.words))
        reads_before = source.reads

        source.docs["A.md"] = _words(8)
        engine.on_modified("A.md", _stat(120))

        assert seen == [18]
        assert engine.metrics.words == 18
        assert engine.metrics.size == 130
        # Only the modified note was read again
        assert source.reads - reads_before == 1

    def test_delete_of_unknown_file_is_noop(self, engine: AggregationEngine):
        seen: list[int] = []
        engine.metrics.on_updated(lambda m: seen.append(1))
        before = engine.metrics.snapshot()

        engine.on_deleted("ghost.md")

        assert engine.metrics.snapshot() == before
        assert seen == []


class TestLifecycle:
    """Edge policies for individual transitions."""

    def test_delete_uses_last_known_contribution(self, engine: AggregationEngine, source: FakeSource):
        """The file's content is gone by the time the delete arrives."""
        source.docs["A.md"] = _words(5) + " [[x]]"
        engine.on_created("A.md", _stat(100))
        del source.docs["A.md"]

        engine.on_deleted("A.md")

        assert _totals(engine) == {"files": 0, "notes": 0, "attachments": 0, "size": 0, "links": 0, "words": 0}
        assert engine.tracked_paths() == []

    def test_modify_of_untracked_file_counts_as_creation(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(3)
        engine.on_modified("A.md", _stat(10))
        assert engine.metrics.notes == 1
        assert engine.metrics.words == 3

    def test_duplicate_creation_does_not_double_count(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(3)
        engine.on_created("A.md", _stat(10))
        source.docs["A.md"] = _words(4)
        engine.on_created("A.md", _stat(12))
        assert _totals(engine) == {"files": 1, "notes": 1, "attachments": 0, "size": 12, "links": 0, "words": 4}

    def test_rename_preserves_counts(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(5)
        engine.on_created("A.md", _stat(100))
        before = _totals(engine)
        reads = source.reads

        engine.on_renamed("A.md", "notes/A.md")

        assert _totals(engine) == before
        assert source.reads == reads
        assert engine.tracked_paths() == ["notes/A.md"]

        engine.on_deleted("notes/A.md")
        assert engine.metrics.files == 0

    def test_rename_of_untracked_file_creates_destination(self, engine: AggregationEngine, tmp_path: Path):
        (tmp_path / "pic.png").write_bytes(b"x" * 30)
        engine.on_renamed("old.png", "pic.png")
        assert engine.metrics.attachments == 1
        assert engine.metrics.size == 30

    def test_rename_into_ignored_location_deletes(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(2)
        engine.on_created("A.md", _stat(10))
        engine.on_renamed("A.md", ".trash/A.md")
        assert engine.metrics.files == 0
        assert engine.tracked_paths() == []

    def test_rename_over_existing_file_retires_it(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(2)
        source.docs["B.md"] = _words(7)
        engine.on_created("A.md", _stat(10))
        engine.on_created("B.md", _stat(70))

        engine.on_renamed("A.md", "B.md")

        assert _totals(engine) == {"files": 1, "notes": 1, "attachments": 0, "size": 10, "links": 0, "words": 2}

    def test_rename_note_to_attachment_recounts(self, engine: AggregationEngine, source: FakeSource, tmp_path: Path):
        """A note renamed to a non-note suffix stops counting words and links."""
        source.docs["a.md"] = _words(3) + " [[x]]"
        engine.on_created("a.md", _stat(14))
        (tmp_path / "a.txt").write_bytes(b"x" * 14)

        engine.on_renamed("a.md", "a.txt")

        assert _totals(engine) == {"files": 1, "notes": 0, "attachments": 1, "size": 14, "links": 0, "words": 0}
        assert engine.cached_contribution("a.txt") == Contribution(is_attachment=True, size=14)

    def test_rename_attachment_to_note_recounts(self, engine: AggregationEngine, source: FakeSource, tmp_path: Path):
        engine.on_created("b.png", _stat(50))
        (tmp_path / "b.md").write_text("one two [[c]]", encoding="utf-8")
        source.docs["b.md"] = "one two [[c]]"

        engine.on_renamed("b.png", "b.md")

        assert _totals(engine) == {"files": 1, "notes": 1, "attachments": 0, "size": 13, "links": 1, "words": 3}

    def test_rename_keeping_kind_does_not_read(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(3)
        engine.on_created("a.md", _stat(10))
        reads = source.reads

        engine.on_renamed("a.md", "b.markdown.md")

        assert source.reads == reads
        assert engine.metrics.words == 3

    def test_path_locks_are_released(self, engine: AggregationEngine, source: FakeSource):
        """Per-path locks do not accumulate for paths that are gone."""
        for i in range(50):
            source.docs[f"n{i}.md"] = _words(1)
            engine.on_created(f"n{i}.md", _stat(1))
            engine.on_renamed(f"n{i}.md", f"m{i}.md")
            engine.on_deleted(f"m{i}.md")
        gc.collect()

        assert len(engine._path_locks) == 0
        assert engine.metrics.files == 0

    def test_rename_to_same_path_is_noop(self, engine: AggregationEngine, source: FakeSource):
        source.docs["A.md"] = _words(2)
        engine.on_created("A.md", _stat(10))
        engine.on_renamed("A.md", "A.md")
        assert engine.metrics.words == 2

    def test_directory_delete_and_rename(self, engine: AggregationEngine, source: FakeSource):
        source.docs["dir/a.md"] = _words(2)
        engine.on_created("dir/a.md", _stat(10))
        engine.on_created("dir/b.png", _stat(5))
        engine.on_created("dirty.png", _stat(1))

        engine.on_renamed("dir", "moved", is_directory=True)
        assert engine.tracked_paths() == ["dirty.png", "moved/a.md", "moved/b.png"]

        engine.on_deleted("moved", is_directory=True)
        assert engine.tracked_paths() == ["dirty.png"]
        assert _totals(engine)["size"] == 1

    def test_ignored_paths_are_not_tracked(self, engine: AggregationEngine, source: FakeSource):
        source.docs[".obsidian/workspace.md"] = _words(2)
        engine.on_created(".obsidian/workspace.md", _stat(10))
        assert engine.metrics.files == 0


class TestClassification:

    def test_attachment_suffixes_restrict_attachments(self, tmp_path: Path, source: FakeSource):
        cfg = StatsConfig(vault_root=tmp_path, attachment_suffixes=(".png", ".pdf"))
        engine = AggregationEngine(cfg, source=source)

        assert engine.classify("a.md") == "note"
        assert engine.classify("a.PNG") == "attachment"
        assert engine.classify("a.canvas") == "other"
        assert engine.classify(".git/config") is None

        engine.on_created("a.canvas", _stat(9))
        assert (engine.metrics.files, engine.metrics.notes, engine.metrics.attachments, engine.metrics.size) == (1, 0, 0, 9)


class TestFailures:
    """A bad file never corrupts totals or stops processing."""

    def test_read_failure_is_zero_contribution(self, engine: AggregationEngine, source: FakeSource, caplog):
        caplog.set_level(logging.WARNING, logger="vaultstats.engine.aggregator")
        source.docs["ok.md"] = _words(3)
        source.fail.add("bad.md")

        engine.on_created("bad.md", _stat(100))
        engine.on_created("ok.md", _stat(10))

        assert _totals(engine) == {"files": 1, "notes": 1, "attachments": 0, "size": 10, "links": 0, "words": 3}
        assert any("bad.md" in r.getMessage() for r in caplog.records)
        # Not even counted toward files; the cached entry waits for a successful event
        assert engine.cached_contribution("bad.md") == Contribution.empty()
        assert "bad.md" in engine.tracked_paths()

    def test_failed_file_self_heals_on_next_event(self, engine: AggregationEngine, source: FakeSource):
        source.fail.add("bad.md")
        engine.on_created("bad.md", _stat(100))
        source.fail.clear()
        source.docs["bad.md"] = _words(4)

        engine.on_modified("bad.md", _stat(100))

        assert engine.metrics.notes == 1
        assert engine.metrics.words == 4

    def test_failure_after_success_removes_contribution(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(4)
        engine.on_created("a.md", _stat(40))
        source.fail.add("a.md")

        engine.on_modified("a.md", _stat(40))
        assert engine.metrics.files == 0

        engine.on_deleted("a.md")
        assert _totals(engine)["files"] == 0
        assert engine.metrics.words == 0

    def test_missing_file_without_stat(self, engine: AggregationEngine):
        engine.on_created("vanished.png")
        assert engine.metrics.files == 0

    def test_handle_never_raises(self, engine: AggregationEngine, monkeypatch, caplog):
        caplog.set_level(logging.ERROR, logger="vaultstats.engine.aggregator")

        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine, "on_created", boom)
        engine.handle(FileEvent(kind="created", rel_path="a.md"))
        assert any("Error processing created" in r.getMessage() for r in caplog.records)

    def test_unknown_event_kind_is_logged(self, engine: AggregationEngine, caplog):
        caplog.set_level(logging.WARNING, logger="vaultstats.engine.aggregator")
        engine.handle(FileEvent(kind="exploded", rel_path="a.md"))
        assert any("Unknown event kind" in r.getMessage() for r in caplog.records)


class TestShutdown:

    def test_in_flight_result_is_discarded(self, engine: AggregationEngine, source: FakeSource):
        """A computation that finishes after shutdown must not touch the aggregate."""
        entered = threading.Event()
        release = threading.Event()
        original = source.read_text

        def slow_read(path: str) -> str:
            entered.set()
            release.wait(timeout=5)
            return original(path)

        source.docs["a.md"] = _words(5)
        source.read_text = slow_read  # type: ignore[method-assign]

        worker = threading.Thread(target=engine.on_created, args=("a.md", _stat(10)))
        worker.start()
        assert entered.wait(timeout=5)
        engine.shutdown()
        release.set()
        worker.join(timeout=5)

        assert engine.closed
        assert engine.metrics.files == 0
        assert engine.tracked_paths() == []

    def test_events_after_shutdown_are_ignored(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(5)
        engine.on_created("a.md", _stat(10))
        engine.shutdown()

        engine.on_deleted("a.md")
        engine.on_created("b.png", _stat(3))

        assert engine.metrics.files == 1


class TestActiveDocument:
    """The open note's word count and timestamps."""

    def test_active_document_is_informational(self, engine: AggregationEngine, source: FakeSource, tmp_path: Path):
        (tmp_path / "a.md").write_text("x", encoding="utf-8")
        source.docs["a.md"] = _words(6)
        engine.on_created("a.md", _stat(10))

        engine.on_active_document_changed("a.md")

        assert engine.metrics.note_words == 6
        assert engine.metrics.created_at is not None
        assert engine.metrics.updated_at is not None
        assert engine.metrics.words == 6  # not added twice

    def test_active_document_uses_event_stat(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(1)
        engine.on_active_document_changed("a.md", _stat(1))
        assert engine.metrics.updated_at.timestamp() == 1_700_000_100.0
        assert engine.metrics.created_at.timestamp() == 1_700_000_000.0

    def test_editing_active_document_refreshes_it(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(2)
        engine.on_created("a.md", _stat(10))
        engine.on_active_document_changed("a.md", _stat(10))

        source.docs["a.md"] = _words(9)
        engine.on_modified("a.md", FileStat(size=20, ctime=1_700_000_000.0, mtime=1_800_000_000.0))

        assert engine.metrics.note_words == 9
        assert engine.metrics.updated_at.timestamp() == 1_800_000_000.0

    def test_non_note_active_document_has_no_words(self, engine: AggregationEngine):
        engine.on_active_document_changed("pic.png", _stat(10))
        assert engine.metrics.note_words == 0

    def test_unreadable_active_document_counts_zero(self, engine: AggregationEngine, source: FakeSource):
        source.fail.add("a.md")
        engine.on_active_document_changed("a.md", _stat(10))
        assert engine.metrics.note_words == 0

    def test_deleting_active_document_clears_state(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(2)
        engine.on_created("a.md", _stat(10))
        engine.on_active_document_changed("a.md", _stat(10))

        engine.on_deleted("a.md")

        assert engine.active_path is None
        assert engine.metrics.note_words == 0
        assert engine.metrics.created_at is None

    def test_rename_follows_active_document(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(2)
        engine.on_created("a.md", _stat(10))
        engine.on_active_document_changed("a.md", _stat(10))
        engine.on_renamed("a.md", "b.md")
        assert engine.active_path == "b.md"

    def test_active_event_dispatch(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(3)
        engine.handle(FileEvent(kind="active", rel_path="a.md", stat=_stat(1)))
        assert engine.metrics.note_words == 3


def _history(rng: random.Random, n_files: int) -> tuple[list[list[tuple]], dict[str, tuple[int, int]]]:
    """Per-file event sequences plus the final (size, words) of files still present."""
    per_file: list[list[tuple]] = []
    final: dict[str, tuple[int, int]] = {}
    for i in range(n_files):
        path = f"n{i}.md" if i % 3 else f"a{i}.png"
        size, words = rng.randint(1, 500), rng.randint(0, 40)
        events = [("created", path, size, words)]
        for _ in range(rng.randint(0, 3)):
            size, words = rng.randint(1, 500), rng.randint(0, 40)
            events.append(("modified", path, size, words))
        if rng.random() < 0.4:
            events.append(("deleted", path, 0, 0))
        else:
            final[path] = (size, words if path.endswith(".md") else 0)
        per_file.append(events)
    return per_file, final


def _interleave(rng: random.Random, per_file: list[list[tuple]]) -> list[tuple]:
    """Random merge that keeps each file's events in order."""
    queues = [list(events) for events in per_file]
    out: list[tuple] = []
    while any(queues):
        q = rng.choice([q for q in queues if q])
        out.append(q.pop(0))
    return out


def _apply(engine: AggregationEngine, source: FakeSource, event: tuple) -> None:
    kind, path, size, words = event
    if kind == "deleted":
        engine.on_deleted(path)
        return
    source.docs[path] = _words(words)
    if kind == "created":
        engine.on_created(path, _stat(size))
    else:
        engine.on_modified(path, _stat(size))


class TestSumInvariant:
    """Totals always equal the sum over currently present files."""

    @pytest.mark.parametrize("seed", range(10))
    def test_random_interleavings(self, tmp_path: Path, seed: int):
        rng = random.Random(seed)
        per_file, final = _history(rng, 25)
        source = FakeSource()
        engine = AggregationEngine(StatsConfig(vault_root=tmp_path), source=source)

        for event in _interleave(rng, per_file):
            _apply(engine, source, event)

        notes = [p for p in final if p.endswith(".md")]
        assert _totals(engine) == {
            "files": len(final),
            "notes": len(notes),
            "attachments": len(final) - len(notes),
            "size": sum(size for size, _ in final.values()),
            "links": 0,
            "words": sum(words for _, words in final.values()),
        }
        assert engine.tracked_paths() == sorted(final)

    @pytest.mark.parametrize("seed", range(3))
    def test_concurrent_files(self, tmp_path: Path, seed: int):
        """Different files processed on different threads still sum correctly."""
        rng = random.Random(seed)
        per_file, final = _history(rng, 40)
        source = FakeSource()
        engine = AggregationEngine(StatsConfig(vault_root=tmp_path), source=source)

        threads = [
            threading.Thread(target=lambda evs=events: [_apply(engine, source, e) for e in evs])
            for events in per_file
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert engine.metrics.files == len(final)
        assert engine.metrics.size == sum(size for size, _ in final.values())
        assert engine.metrics.words == sum(words for _, words in final.values())

    def test_reset_then_replay_matches_incremental(self, tmp_path: Path):
        rng = random.Random(42)
        per_file, final = _history(rng, 20)
        source = FakeSource()
        engine = AggregationEngine(StatsConfig(vault_root=tmp_path), source=source)
        for event in _interleave(rng, per_file):
            _apply(engine, source, event)
        incremental = engine.metrics.snapshot()

        metrics = engine.metrics
        metrics.reset()
        replay = AggregationEngine(StatsConfig(vault_root=tmp_path), metrics=metrics, source=source)
        for path, (size, _) in sorted(final.items()):
            replay.on_created(path, _stat(size))

        assert metrics.snapshot() == incremental


class TestScan:
    """Full rescan over a real vault directory."""

    @pytest.fixture
    def vault(self, tmp_path: Path) -> Path:
        root = tmp_path / "vault"
        (root / "notes").mkdir(parents=True)
        (root / ".obsidian").mkdir()
        (root / "notes" / "a.md").write_text("# Title\n\nHello world, see [[b]].\n", encoding="utf-8")
        (root / "b.md").write_text("```\nignored code\n```\n\none two three\n", encoding="utf-8")
        (root / "pic.png").write_bytes(b"\x89PNG" + b"0" * 96)
        (root / ".obsidian" / "app.json").write_text("{}", encoding="utf-8")
        return root

    def test_scan_counts_vault(self, vault: Path):
        engine = AggregationEngine(StatsConfig(vault_root=vault))
        notified: list[int] = []
        engine.metrics.on_updated(lambda m: notified.append(m.files))

        stats = engine.scan()

        assert stats.files_scanned == 3
        assert stats.files_failed == 0
        assert notified == [3]
        s = engine.metrics.snapshot()
        assert (s.files, s.notes, s.attachments, s.links) == (3, 2, 1, 1)
        # "Title" + "Hello world see b" + "one two three"
        assert s.words == 1 + 4 + 3
        assert s.size == sum(p.stat().st_size for p in [vault / "notes" / "a.md", vault / "b.md", vault / "pic.png"])

    def test_scan_matches_incremental_replay(self, vault: Path):
        scanned = AggregationEngine(StatsConfig(vault_root=vault))
        scanned.scan()

        incremental = AggregationEngine(StatsConfig(vault_root=vault))
        for rel in ["notes/a.md", "b.md", "pic.png", ".obsidian/app.json"]:
            incremental.on_created(rel)

        assert incremental.metrics.snapshot() == scanned.metrics.snapshot()

    def test_rescan_replaces_previous_totals(self, vault: Path):
        engine = AggregationEngine(StatsConfig(vault_root=vault))
        engine.scan()
        (vault / "pic.png").unlink()
        engine.scan()
        assert engine.metrics.attachments == 0
        assert engine.tracked_paths() == ["b.md", "notes/a.md"]


class TestRunLoop:

    def test_run_consumes_queue_in_order(self, engine: AggregationEngine, source: FakeSource):
        source.docs["a.md"] = _words(5)
        q = EventQueue()
        q.put(FileEvent(kind="created", rel_path="a.md", stat=_stat(10)))
        q.put(FileEvent(kind="renamed", rel_path="a.md", new_rel_path="b.md"))
        q.put(FileEvent(kind="created", rel_path="c.png", stat=_stat(4)))
        q.put(FileEvent(kind="deleted", rel_path="b.md"))

        stop = threading.Event()
        t = threading.Thread(target=engine.run, args=(q, stop))
        t.start()
        q.join()
        stop.set()
        t.join(timeout=5)

        assert _totals(engine) == {"files": 1, "notes": 0, "attachments": 1, "size": 4, "links": 0, "words": 0}

    def test_run_stops_on_shutdown(self, engine: AggregationEngine):
        q = EventQueue()
        t = threading.Thread(target=engine.run, args=(q,))
        t.start()
        engine.shutdown()
        t.join(timeout=5)
        assert not t.is_alive()

    def test_shared_metrics_instance(self, tmp_path: Path, source: FakeSource):
        metrics = Metrics()
        engine = AggregationEngine(StatsConfig(vault_root=tmp_path), metrics=metrics, source=source)
        engine.on_created("x.png", _stat(3))
        assert metrics.size == 3
        assert engine.cached_contribution("x.png") == Contribution(is_attachment=True, size=3)
