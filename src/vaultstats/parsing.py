"""Document parsing: raw text plus typed regions for a vault file.

The aggregation engine only depends on the ``DocumentSource`` protocol.
``MarkdownDocumentSource`` is the default implementation for Obsidian-style
vaults; it splits a note into block regions carrying the same type tags the
Obsidian metadata cache uses for sections.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from frontmatter.default_handlers import YAMLHandler

from .models import TypedRegion
from .utils import count_links, safe_read_text

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
HEADING_RE = re.compile(r"^ {0,3}#{1,6}(?:[ \t]|$)")
THEMATIC_BREAK_RE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
BLOCKQUOTE_RE = re.compile(r"^ {0,3}>")
CALLOUT_RE = re.compile(r"^ {0,3}>\s*\[![\w-]+\]")
LIST_ITEM_RE = re.compile(r"^[ \t]*(?:[-*+]|\d{1,9}[.)])(?:[ \t]+|$)")
FOOTNOTE_RE = re.compile(r"^\[\^[^\]]+\]:")
HTML_RE = re.compile(r"^ {0,3}<(?:!--|/?[A-Za-z][\w-]*(?:[\s/>]|$))")
TABLE_DELIMITER_RE = re.compile(r"^[ \t]*\|?[ \t]*:?-+:?[ \t]*(?:\|[ \t]*:?-+:?[ \t]*)*\|?[ \t]*$")

# Regions whose content is not prose; links inside them are not counted.
NON_PROSE_TYPES = frozenset({"code", "math", "yaml", "html", "comment"})


class DocumentSource(Protocol):
    """Reads vault documents and reports their typed regions.

    All methods may raise (``OSError``, ``ValueError``) for unreadable or
    unparseable documents; callers are responsible for isolating failures.
    When ``text`` is given, regions and links are derived from that exact
    snapshot instead of a fresh read.
    """

    def read_text(self, path: str) -> str:
        ...

    def get_typed_regions(self, path: str, text: str | None = None) -> list[TypedRegion]:
        ...

    def get_link_count(self, path: str, text: str | None = None) -> int:
        ...


@dataclass
class _Line:
    text: str  # without line terminator
    start: int
    end: int  # offset just past the content, before the terminator


def _split_lines(text: str) -> list[_Line]:
    lines: list[_Line] = []
    pos = 0
    for raw in text.splitlines(keepends=True):
        content = raw.rstrip("\r\n")
        lines.append(_Line(content, pos, pos + len(content)))
        pos += len(raw)
    return lines


def _is_blank(line: _Line) -> bool:
    return not line.text.strip()


def parse_regions(text: str) -> list[TypedRegion]:
    """Split Markdown ``text`` into typed block regions.

    Offsets are character positions into ``text``. A region ends at the end
    of its last line, excluding the line terminator.
    """
    lines = _split_lines(text)
    regions: list[TypedRegion] = []
    i = 0
    n = len(lines)

    handler = YAMLHandler()
    if lines and handler.detect(text) and handler.FM_BOUNDARY.match(lines[0].text):
        for j in range(1, n):
            if handler.FM_BOUNDARY.match(lines[j].text):
                regions.append(TypedRegion("yaml", lines[0].start, lines[j].end))
                i = j + 1
                break
        else:
            logger.debug("Unterminated frontmatter block; parsing it as body text")

    while i < n:
        line = lines[i]
        stripped = line.text.strip()

        if not stripped:
            i += 1
            continue

        fence = FENCE_RE.match(line.text)
        if fence:
            marker = fence.group(1)
            j = i + 1
            while j < n:
                candidate = lines[j].text.strip()
                if candidate.startswith(marker[0] * len(marker)) and not candidate.strip(marker[0]):
                    break
                j += 1
            last = min(j, n - 1)
            regions.append(TypedRegion("code", line.start, lines[last].end))
            i = last + 1
            continue

        if stripped.startswith("$$") or stripped.startswith("%%"):
            delim = stripped[:2]
            region_type = "math" if delim == "$$" else "comment"
            if len(stripped) > 2 and stripped.endswith(delim) and len(stripped) >= 4:
                regions.append(TypedRegion(region_type, line.start, line.end))
                i += 1
                continue
            j = i + 1
            while j < n and delim not in lines[j].text:
                j += 1
            last = min(j, n - 1)
            regions.append(TypedRegion(region_type, line.start, lines[last].end))
            i = last + 1
            continue

        if HEADING_RE.match(line.text):
            regions.append(TypedRegion("heading", line.start, line.end))
            i += 1
            continue

        if THEMATIC_BREAK_RE.match(line.text):
            regions.append(TypedRegion("thematicBreak", line.start, line.end))
            i += 1
            continue

        if BLOCKQUOTE_RE.match(line.text):
            region_type = "callout" if CALLOUT_RE.match(line.text) else "blockquote"
            j = i
            while j + 1 < n and BLOCKQUOTE_RE.match(lines[j + 1].text):
                j += 1
            regions.append(TypedRegion(region_type, line.start, lines[j].end))
            i = j + 1
            continue

        if "|" in line.text and i + 1 < n and TABLE_DELIMITER_RE.match(lines[i + 1].text):
            j = i + 1
            while j + 1 < n and not _is_blank(lines[j + 1]) and "|" in lines[j + 1].text:
                j += 1
            regions.append(TypedRegion("table", line.start, lines[j].end))
            i = j + 1
            continue

        if FOOTNOTE_RE.match(line.text):
            j = i
            while j + 1 < n and not _is_blank(lines[j + 1]) and lines[j + 1].text[:1] in (" ", "\t"):
                j += 1
            regions.append(TypedRegion("footnoteDefinition", line.start, lines[j].end))
            i = j + 1
            continue

        if LIST_ITEM_RE.match(line.text):
            j = i
            while j + 1 < n:
                nxt = lines[j + 1]
                if not _is_blank(nxt):
                    if HEADING_RE.match(nxt.text) or (FENCE_RE.match(nxt.text) and not nxt.text[:1].isspace()):
                        break
                    j += 1
                    continue
                # A blank line ends the list unless another item or an indented
                # continuation follows it.
                k = j + 1
                while k < n and _is_blank(lines[k]):
                    k += 1
                if k < n and (LIST_ITEM_RE.match(lines[k].text) or lines[k].text[:1] in (" ", "\t")):
                    j = k
                    continue
                break
            regions.append(TypedRegion("list", line.start, lines[j].end))
            i = j + 1
            continue

        if HTML_RE.match(line.text):
            j = i
            while j + 1 < n and not _is_blank(lines[j + 1]):
                j += 1
            regions.append(TypedRegion("html", line.start, lines[j].end))
            i = j + 1
            continue

        j = i
        while j + 1 < n:
            nxt = lines[j + 1].text
            if (
                not nxt.strip()
                or HEADING_RE.match(nxt)
                or FENCE_RE.match(nxt)
                or BLOCKQUOTE_RE.match(nxt)
                or THEMATIC_BREAK_RE.match(nxt)
                or LIST_ITEM_RE.match(nxt)
                or nxt.strip().startswith("$$")
            ):
                break
            j += 1
        regions.append(TypedRegion("paragraph", line.start, lines[j].end))
        i = j + 1

    return regions


def count_prose_links(text: str, regions: list[TypedRegion]) -> int:
    return sum(
        count_links(text[r.start_offset:r.end_offset])
        for r in regions
        if r.type not in NON_PROSE_TYPES
    )


@dataclass
class MarkdownDocumentSource:
    """Reads notes from a vault directory; paths are relative to ``root``."""
    root: Path
    max_bytes: int = 10_000_000

    def read_text(self, path: str) -> str:
        return safe_read_text(self.root / path, max_bytes=self.max_bytes)

    def get_typed_regions(self, path: str, text: str | None = None) -> list[TypedRegion]:
        if text is None:
            text = self.read_text(path)
        return parse_regions(text)

    def get_link_count(self, path: str, text: str | None = None) -> int:
        if text is None:
            text = self.read_text(path)
        return count_prose_links(text, parse_regions(text))
