from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path

from ..models import FileStat

logger = logging.getLogger(__name__)


def matches_ignore_pattern(rel_path: str, patterns: list[str]) -> bool:
    """True if a vault-relative path matches any ignore glob.

    - ``**/name`` matches ``name`` as any path segment or trailing subpath
    - ``dir/**`` matches ``dir`` and everything beneath it
    - anything else is an ``fnmatch`` glob against the whole path
    """
    rel_path = rel_path.replace("\\", "/")
    parts = rel_path.split("/")

    for pattern in patterns:
        pattern = pattern.replace("\\", "/")

        if pattern.startswith("**/"):
            tail = pattern[3:]
            if fnmatch(rel_path, tail):
                return True
            if any(fnmatch("/".join(parts[i:]), tail) for i in range(1, len(parts))):
                return True
            if tail.endswith("/**") and matches_ignore_pattern(rel_path, ["**/" + tail[:-3]]):
                return True
            if any(fnmatch(part, tail) for part in parts):
                return True
        elif pattern.endswith("/**"):
            prefix = pattern[:-3]
            if rel_path == prefix or rel_path.startswith(prefix + "/"):
                return True
        elif fnmatch(rel_path, pattern):
            return True

    return False


@dataclass
class Reconciler:
    root: Path
    ignore: list[str]

    def scan_files(self, under: str = "") -> list[tuple[str, FileStat]]:
        """Walk the vault (or one subdirectory of it) and stat every tracked file.

        Files that vanish or cannot be stat'ed during the walk are skipped.
        """
        base = self.root / under if under else self.root
        found: list[tuple[str, FileStat]] = []
        for p in sorted(base.rglob("*")):
            if not p.is_file():
                continue
            rel = str(p.relative_to(self.root)).replace("\\", "/")
            if matches_ignore_pattern(rel, self.ignore):
                continue
            try:
                found.append((rel, FileStat.from_path(p)))
            except OSError as e:
                logger.warning(f"Cannot stat {rel}: {e}")
        return found
