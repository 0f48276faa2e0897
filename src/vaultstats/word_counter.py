from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .models import TypedRegion
from .parsing import DocumentSource
from .tokenizers import TokenizerRegistry, default_registry

logger = logging.getLogger(__name__)


@dataclass
class WordCounter:
    """Counts words in a document by tokenizing each typed region.

    Regions are independent: each one is sliced out of the text, handed to
    the tokenizer registered for its type, and contributes the number of
    tokens returned. Regions with no registered tokenizer contribute zero.
    """
    registry: TokenizerRegistry = field(default_factory=default_registry)

    def count(self, text: str, regions: Iterable[TypedRegion], path: str = "<memory>") -> int:
        total = 0
        for region in regions:
            tokenizer = self.registry.lookup(region.type)
            if tokenizer is None:
                logger.info(f"{path}: no tokenizer, region.type={region.type}")
                continue
            total += len(tokenizer.tokenize(text[region.start_offset:region.end_offset]))
        return total

    def count_by_type(self, text: str, regions: Iterable[TypedRegion], path: str = "<memory>") -> dict[str, int]:
        """Per-type breakdown; unregistered types are reported with a zero count."""
        counts: dict[str, int] = {}
        for region in regions:
            counts.setdefault(region.type, 0)
            counts[region.type] += self.count(text, [region], path=path)
        return counts

    def count_document(self, source: DocumentSource, path: str) -> int:
        """Read and count one document, reporting 0 if it cannot be read or parsed."""
        try:
            text = source.read_text(path)
            regions = source.get_typed_regions(path, text)
            return self.count(text, regions, path=path)
        except Exception as e:
            logger.warning(f"{path}: word count failed: {e}")
            return 0
