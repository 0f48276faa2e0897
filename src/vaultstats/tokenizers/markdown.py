from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from .base import TokenizerRegistry

# Ideographs, kana and hangul syllables each count as one word.
CJK_CLASS = "\u1100-\u11ff\u3040-\u30ff\u3130-\u318f\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff"
CJK_CHAR_RE = re.compile(f"[{CJK_CLASS}]")
SEGMENT_RE = re.compile(f"[{CJK_CLASS}]|[^\\W_{CJK_CLASS}]+(?:['\u2019.\\-][^\\W_{CJK_CLASS}]+)*")
WORD_BOUNDARY_RE = re.compile(r"[\s\"|,()\[\]{}<>\u3000-\u303f\uff08\uff09\uff0c\uff1a\uff1b\uff01\uff1f]+")
WORDLIKE_RE = re.compile(r"[^\W_]")
STRIP_CHARS = "#*_~`>=+-:;.!?'\"/\\^$%&@"

DEFAULT_COUNT_TYPES = (
    "paragraph",
    "heading",
    "list",
    "blockquote",
    "callout",
    "table",
    "footnoteDefinition",
)
DEFAULT_ZERO_TYPES = (
    "code",
    "math",
    "yaml",
    "html",
    "comment",
    "thematicBreak",
)


@dataclass(frozen=True)
class WhitespaceTokenizer:
    """Splits on runs of whitespace, nothing else."""

    def tokenize(self, text: str) -> list[str]:
        return text.split()


@dataclass(frozen=True)
class UnitTokenizer:
    """Registered for region types that never contribute words (code, math, ...)."""

    def tokenize(self, text: str) -> list[str]:
        return []


@dataclass(frozen=True)
class MarkdownTokenizer:
    """Counts prose words in Markdown source.

    Markup characters (emphasis, heading hashes, list bullets, link
    brackets, table pipes) are separators or stripped from token edges,
    tokens with no letter or digit are dropped, and CJK text is counted
    one character per word.
    """

    def tokenize(self, text: str) -> list[str]:
        if not text.strip():
            return []
        tokens: list[str] = []
        for raw in WORD_BOUNDARY_RE.split(text):
            token = raw.strip(STRIP_CHARS)
            if not token or not WORDLIKE_RE.search(token):
                continue
            if CJK_CHAR_RE.search(token):
                tokens.extend(SEGMENT_RE.findall(token))
            else:
                tokens.append(token)
        return tokens


def default_registry(
    count_types: Iterable[str] = DEFAULT_COUNT_TYPES,
    zero_types: Iterable[str] = DEFAULT_ZERO_TYPES,
) -> TokenizerRegistry:
    """Build the frozen registry used for Markdown notes."""
    registry = TokenizerRegistry()
    markdown = MarkdownTokenizer()
    unit = UnitTokenizer()
    for region_type in zero_types:
        registry.register(region_type, unit)
    for region_type in count_types:
        registry.register(region_type, markdown)
    return registry.freeze()
