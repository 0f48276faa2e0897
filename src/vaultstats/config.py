from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib

from .tokenizers.markdown import DEFAULT_COUNT_TYPES, DEFAULT_ZERO_TYPES

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))

def _suffixes(values: list[str]) -> tuple[str, ...]:
    out = []
    for v in values:
        v = v.strip().lower()
        if not v:
            continue
        out.append(v if v.startswith(".") else f".{v}")
    return tuple(out)

@dataclass(frozen=True)
class StatsConfig:
    """Configuration for statistics over a single vault."""

    vault_root: Path

    ignore: list[str] = field(default_factory=lambda: [".obsidian/**", ".git/**", ".trash/**", "**/.DS_Store"])

    def __post_init__(self):
        """Convert string paths to Path objects and expand ~ and environment variables."""
        if isinstance(self.vault_root, str):
            object.__setattr__(self, 'vault_root', Path(_expand(self.vault_root)))

    # Files
    note_suffixes: tuple[str, ...] = (".md",)
    attachment_suffixes: tuple[str, ...] = ()  # empty: every non-note file is an attachment
    max_note_bytes: int = 10_000_000

    # Words
    count_types: tuple[str, ...] = DEFAULT_COUNT_TYPES
    zero_types: tuple[str, ...] = DEFAULT_ZERO_TYPES

    # Watch
    debounce_ms: int = 500
    scan_workers: int = 4

    # Logging
    log_file: str | None = None
    log_level: str = "INFO"

    # Metrics
    changelog_size: int = 0

    @staticmethod
    def from_toml(path: str | Path) -> "StatsConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        vault = data.get("vault", {})
        files = data.get("files", {})
        words = data.get("words", {})
        watch = data.get("watch", {})
        log = data.get("logging", {})
        metrics = data.get("metrics", {})

        if "root" not in vault:
            raise ValueError("Missing required setting: [vault] root")
        vault_root = Path(_expand(vault["root"])).resolve()

        note_suffixes = _suffixes(list(files.get("note_suffixes", [".md"])))
        if not note_suffixes:
            raise ValueError("Invalid note_suffixes: at least one suffix is required.")
        attachment_suffixes = _suffixes(list(files.get("attachment_suffixes", [])))
        overlap = set(note_suffixes) & set(attachment_suffixes)
        if overlap:
            raise ValueError(f"Suffixes cannot be both note and attachment: {sorted(overlap)}")

        max_note_bytes = int(files.get("max_note_bytes", 10_000_000))
        if max_note_bytes <= 0:
            raise ValueError(f"Invalid max_note_bytes: {max_note_bytes}. Must be positive.")

        count_types = tuple(words.get("count_types", DEFAULT_COUNT_TYPES))
        zero_types = tuple(words.get("zero_types", DEFAULT_ZERO_TYPES))
        both = set(count_types) & set(zero_types)
        if both:
            raise ValueError(f"Region types cannot be both counted and zero: {sorted(both)}")

        debounce_ms = int(watch.get("debounce_ms", 500))
        if debounce_ms < 0 or debounce_ms > 60_000:
            raise ValueError(f"Invalid debounce_ms: {debounce_ms}. Must be between 0 and 60000.")

        scan_workers = int(watch.get("scan_workers", 4))
        if scan_workers <= 0 or scan_workers > 64:
            raise ValueError(f"Invalid scan_workers: {scan_workers}. Must be between 1 and 64.")

        log_level = str(log.get("level", "INFO")).upper()
        if log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {log_level}. Must be one of {VALID_LOG_LEVELS}.")
        log_file = log.get("file") or None
        if log_file:
            log_file = _expand(log_file)

        changelog_size = int(metrics.get("changelog_size", 0))
        if changelog_size < 0 or changelog_size > 1_000_000:
            raise ValueError(f"Invalid changelog_size: {changelog_size}. Must be between 0 and 1000000.")

        return StatsConfig(
            vault_root=vault_root,
            ignore=list(vault.get("ignore", [".obsidian/**", ".git/**", ".trash/**", "**/.DS_Store"])),
            note_suffixes=note_suffixes,
            attachment_suffixes=attachment_suffixes,
            max_note_bytes=max_note_bytes,
            count_types=count_types,
            zero_types=zero_types,
            debounce_ms=debounce_ms,
            scan_workers=scan_workers,
            log_file=log_file,
            log_level=log_level,
            changelog_size=changelog_size,
        )

def load_config(path: str | Path) -> StatsConfig:
    return StatsConfig.from_toml(path)
