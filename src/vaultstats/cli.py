from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

import typer

from .config import StatsConfig, load_config
from .engine.aggregator import AggregationEngine
from .engine.change_detector import ChangeDetector
from .engine.queue import EventQueue
from .metrics import Metrics
from .models import MetricsSnapshot
from .parsing import MarkdownDocumentSource
from .tokenizers import default_registry
from .utils import relpath
from .word_counter import WordCounter

app = typer.Typer(add_completion=False, no_args_is_help=True)

def _cfg(config: str) -> StatsConfig:
    try:
        return load_config(config)
    except FileNotFoundError:
        raise typer.BadParameter(f"Config file not found: {config}. Run `vaultstats init` first.")
    except ValueError as e:
        raise typer.BadParameter(str(e))

def _rel(cfg: StatsConfig, path: str) -> str:
    p = Path(path)
    if p.is_absolute():
        return relpath(cfg.vault_root, p)
    return path.replace("\\", "/")

def _setup_logging(log_file: str | None, log_level: str, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(fmt, datefmt))
    handlers.append(console)

    if log_file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        handlers.append(file_handler)

    logger = logging.getLogger("vaultstats")
    logger.setLevel(level)
    for h in handlers:
        logger.addHandler(h)

def _dump(snapshot: MetricsSnapshot) -> str:
    return json.dumps(snapshot.to_dict(), indent=2, ensure_ascii=False)

@app.command()
def init(vault: str = typer.Option(..., help="Vault root path"),
         out: str = typer.Option("config.toml", help="Write example config to this path")):
    """Write a starter config.toml."""
    outp = Path(out)
    outp.write_text(f"""[vault]
root = "{vault}"
ignore = [".obsidian/**", ".git/**", ".trash/**", "**/.DS_Store"]

[files]
note_suffixes = [".md"]
# Empty: every non-note file counts as an attachment
attachment_suffixes = []
max_note_bytes = 10000000

[words]
count_types = ["paragraph", "heading", "list", "blockquote", "callout", "table", "footnoteDefinition"]
zero_types = ["code", "math", "yaml", "html", "comment", "thematicBreak"]

[watch]
debounce_ms = 500
scan_workers = 4

[logging]
file = ""
level = "INFO"

[metrics]
changelog_size = 0
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")

@app.command()
def scan(config: str = typer.Option("config.toml"),
         active: str = typer.Option(None, help="Note to report as the active document")):
    """Count the whole vault once and print the totals as JSON."""
    cfg = _cfg(config)
    _setup_logging(cfg.log_file, cfg.log_level, verbose=False)
    engine = AggregationEngine(cfg)
    stats = engine.scan()
    if active:
        engine.on_active_document_changed(_rel(cfg, active))
    typer.echo(_dump(engine.metrics.snapshot()))
    if stats.files_failed > 0:
        typer.echo(f"({stats.files_failed} files could not be read)", err=True)

@app.command()
def count(path: str,
          config: str = typer.Option("config.toml"),
          by_type: bool = typer.Option(False, "--by-type", help="Show word counts per region type")):
    """Count the words of a single note."""
    cfg = _cfg(config)
    source = MarkdownDocumentSource(cfg.vault_root, max_bytes=cfg.max_note_bytes)
    counter = WordCounter(default_registry(cfg.count_types, cfg.zero_types))
    rel = _rel(cfg, path)

    if not by_type:
        typer.echo(str(counter.count_document(source, rel)))
        return

    try:
        text = source.read_text(rel)
    except (OSError, ValueError) as e:
        raise typer.BadParameter(f"Cannot read {rel}: {e}")
    regions = source.get_typed_regions(rel, text)
    typer.echo(json.dumps(counter.count_by_type(text, regions, path=rel), indent=2))

@app.command()
def watch(config: str = typer.Option("config.toml"),
          active: str = typer.Option(None, help="Note to report as the active document"),
          log_file: str = typer.Option(None, "--log-file", "-l", help="Log file path"),
          log_level: str = typer.Option(None, "--log-level", help="Log level: DEBUG, INFO, WARNING, ERROR"),
          verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging")):
    """Count the vault, then keep the totals current as files change."""
    cfg = _cfg(config)
    _setup_logging(log_file or cfg.log_file, log_level or cfg.log_level, verbose)

    engine = AggregationEngine(cfg)
    if active:
        engine.on_active_document_changed(_rel(cfg, active))

    # Arm the watcher before scanning; changes made during the scan queue up
    # and are applied afterwards.
    q = EventQueue()
    stop = threading.Event()
    ready = threading.Event()
    detector = ChangeDetector(root=cfg.vault_root, q=q, ignore=cfg.ignore, debounce_ms=cfg.debounce_ms)
    detector_thread = threading.Thread(target=detector.watch, args=(stop, ready), daemon=True)
    detector_thread.start()
    if not ready.wait(timeout=10.0):
        typer.echo("Watcher did not start in time; changes during the initial scan may be missed.", err=True)

    last: list[MetricsSnapshot | None] = [None]
    printed = threading.Lock()

    def _print_if_changed(metrics: Metrics) -> None:
        snap = metrics.snapshot()
        with printed:
            if snap == last[0]:
                return
            last[0] = snap
        typer.echo(json.dumps(snap.to_dict(), ensure_ascii=False))

    try:
        engine.scan()
        engine.metrics.on_updated(_print_if_changed)
        _print_if_changed(engine.metrics)

        typer.echo(f"Watching {cfg.vault_root} for changes. Press Ctrl+C to stop.", err=True)
        engine.run(q, stop)
    except KeyboardInterrupt:
        typer.echo("\nStopping watch mode...", err=True)
    finally:
        stop.set()
        engine.shutdown()
        detector_thread.join(timeout=2.0)

def main() -> None:
    app()
