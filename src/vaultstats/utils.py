from __future__ import annotations

import re
from pathlib import Path

WIKILINK_RE = re.compile(r"(?<!!)\[\[([^\]|#]*)(#[^\]|]+)?(?:\|[^\]]*)?\]\]")
MDLINK_RE = re.compile(r"(?<![!\\\]])\[([^\]\n]*)\]\(<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\)")
URL_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")

def parse_wikilinks(text: str) -> list[str]:
    return [m.group(1).strip() for m in WIKILINK_RE.finditer(text) if m.group(1).strip() or m.group(2)]

def parse_markdown_links(text: str) -> list[str]:
    """Internal ``[text](target)`` links; URLs with a scheme are external and skipped."""
    return [m.group(2) for m in MDLINK_RE.finditer(text) if not URL_SCHEME_RE.match(m.group(2))]

def count_links(text: str) -> int:
    return len(parse_wikilinks(text)) + len(parse_markdown_links(text))

def relpath(root: Path, path: Path) -> str:
    return str(path.resolve().relative_to(root.resolve())).replace("\\", "/")

def safe_read_text(path: Path, max_bytes: int = 10_000_000) -> str:
    b = path.read_bytes()
    if len(b) > max_bytes:
        raise ValueError(f"File too large for text read: {path} ({len(b)} bytes)")
    return b.decode("utf-8", errors="replace")
